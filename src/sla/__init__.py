"""
SLA Tracking Module
===================

Bounded Context for SLA tracking and escalation.

Responsibilities:
- Match each ticket to one SLA rule and compute min/avg/max deadlines
  in business time (schedules, breaks, holidays)
- Track elapsed business time with an explicit pause/resume timer
- Sweep open trackings periodically and fire escalations once per
  repeat window
- Hand escalation notifications to the notification collaborator
- Expose tracking state, reports and monitoring controls over HTTP
"""

__version__ = "1.0.0"
