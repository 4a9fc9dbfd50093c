"""Live roundtable co-facilitator: attributed live transcript, session lifecycle and AI insights."""
