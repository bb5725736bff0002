"""
Map assistant agent.

This package contains the LangGraph-based tool-calling agent, the event
normalizer for its streamed output, and the orchestrator that turns one
user turn into the client event stream.
"""
