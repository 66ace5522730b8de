"""Explicit session context for the client SDK."""

from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass
class SessionContext:
    """Where the API lives and who is calling it.

    Passed to every client component instead of being looked up from
    process-wide state. The token may be swapped after login.
    """

    base_url: str
    token: Optional[str] = None
    timeout: float = 10.0
    default_headers: Dict[str, str] = field(default_factory=dict)

    def auth_headers(self) -> Dict[str, str]:
        headers = dict(self.default_headers)
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def with_token(self, token: Optional[str]) -> "SessionContext":
        return SessionContext(self.base_url, token, self.timeout, dict(self.default_headers))
