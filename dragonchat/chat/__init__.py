"""
Chat core: transcript reconciliation, session storage and the streaming
orchestrator.
"""
