"""
Error types for cl-funding-routes

Every failure surfaced to an RPC caller is a triple of
(numeric class, symbolic reason, optional details):
- 400: malformed request, rejected before any RPC call
- 503: no route could be found or executed under the constraints
"""

from typing import Any, Dict, Optional


class FundingRouteError(Exception):
    """A failure to produce funding routes, carried back to the RPC caller."""

    def __init__(self, code: int, reason: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.reason = reason
        self.details = details or {}
        super().__init__(f"[{code}] {reason}")

    def as_dict(self) -> Dict[str, Any]:
        result = {"status": "error", "code": self.code, "error": self.reason}
        if self.details:
            result["details"] = self.details
        return result


class ProbeError(Exception):
    """Raised by the probe adapters when no working path could be proven."""

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(reason)
