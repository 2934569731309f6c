import re
from dataclasses import dataclass

MOBILE_USER_AGENT = re.compile(
    r"Android|webOS|iPhone|iPad|iPod|BlackBerry|IEMobile|Opera Mini", re.IGNORECASE
)


@dataclass(frozen=True)
class ClientPlatform:
    """What the client running the call is capable of."""

    user_agent: str = ""
    supports_display_capture: bool = True

    @property
    def is_mobile(self) -> bool:
        return bool(MOBILE_USER_AGENT.search(self.user_agent))

    @classmethod
    def from_user_agent(cls, user_agent: str) -> "ClientPlatform":
        # Mobile browsers do not expose display capture.
        return cls(
            user_agent=user_agent,
            supports_display_capture=not MOBILE_USER_AGENT.search(user_agent),
        )
