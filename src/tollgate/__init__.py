"""
Tollgate - Authorization policy engine for agent tool calls.

Tollgate decides, for every tool an agent wants to invoke, whether the call
is allowed, denied or must be confirmed by a human. It provides:
- Layered TOML policies (default, extension, workspace, user, admin tiers)
- A priority algebra in which a more trusted tier always wins
- Tamper detection for project-level policy directories

Example usage:
    $ tollgate check read_file --args '{"path": "README.md"}'
    $ tollgate rules --mode plan
    $ tollgate validate ~/.tollgate/policies
"""

__version__ = "0.1.0"
__author__ = "Tollgate Contributors"

__all__ = [
    "__version__",
    "__author__",
]
