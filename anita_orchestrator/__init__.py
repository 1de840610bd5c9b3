"""
Anita orchestrator: plans and executes coding tasks in a workspace with
an AI model, repairing failed steps automatically.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

__version__ = "0.1.0"
