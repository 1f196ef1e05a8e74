"""
Escalation Module
=================

Bounded Context for rule-driven incident escalation.

Responsibilities:
- Store escalation rules (trigger condition, ordered levels, templates)
- Evaluate event data against trigger conditions
- Track incidents through open -> acknowledged -> resolved
- Escalate unacknowledged incidents level by level on a durable timer
- Notify each level's recipients over email, SMS, webhook and Slack
- Provide statistics and timelines for visibility
"""

__version__ = "1.0.0"
