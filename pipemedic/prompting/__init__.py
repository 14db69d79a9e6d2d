"""
Prompt construction and response recovery.

- builders: diagnosis and patch prompts with per-section character budgets
- recovery: salvage a JSON diagnosis or a unified diff from noisy model output
"""
