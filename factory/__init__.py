"""factory: mail server factory.

Provisions and configures mail-server infrastructure over remote execution
backends. This package carries the security layer that every privileged step
depends on: secrets at rest, secret resolution, and the audit trail.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "3.1.0"
