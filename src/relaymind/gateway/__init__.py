"""
gateway/ — Exchange event protocol shared by the orchestrator and its consumers.
"""
