"""Meeting lifecycle correlation.

Provides MeetingCorrelator, which joins a call-started notification with
the call-detail update that follows it into a single NEW_MEETING event, and
remembers announced meetings until they end.
"""
