"""
Workflow definitions.

Every request type maps to exactly one declarative step graph:
- ask_question / scan_question: explain at the student's tier, diagnose, record
- daily_challenge: one review set per day, weak topics first
- study_plan: hours per topic until an exam
- research: search and summarize
- visualize: storyboard, render and wait for completion
- past_papers: weight topics by exam frequency and weakness
"""

from studyloop.workflows.registry import WorkflowType, build_definitions

__all__ = ["WorkflowType", "build_definitions"]
