"""Request network context passed into the security services"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class NetworkContext:
    ip_address: str = "unknown"
    user_agent: Optional[str] = None
