"""Workflow state machines, dependency planning and the control surface."""
