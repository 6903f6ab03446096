"""
Playbook Engine

Workflow orchestration for customer success playbooks: versioned graph
definitions, trigger dispatch, execution state machine, health scoring
and a live event feed.
"""

__version__ = "0.1.0"
