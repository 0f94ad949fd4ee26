"""
agentforge — package root.

Turns a declarative agent description into a compiled, sandboxed running agent:
build orchestration (local or CI), TEE isolation, subagent processes, credential
handling and multi-provider LLM inference.

Importing the package has no side effects (no config loading, no logging init).
"""

__version__ = "0.3.0"

__all__ = ["__version__"]
