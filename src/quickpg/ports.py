"""Instance id and port allocation helpers for quickpg."""
from __future__ import annotations

import secrets
import socket
import string
from collections.abc import Iterable
from dataclasses import dataclass

ID_ALPHABET = string.ascii_letters + string.digits
ID_LENGTH = 12
MAX_PORT = 65535


class PortAllocationError(RuntimeError):
    """Raised when no free port can be found."""


def generate_instance_id(length: int = ID_LENGTH) -> str:
    """Return a random alphanumeric instance id."""
    if length < 1:
        raise ValueError("Instance id length must be positive.")
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(length))


@dataclass(slots=True)
class PortAllocator:
    """Pick TCP ports that are free on this host.

    With ``base_port`` 0 the operating system chooses; otherwise ports are
    probed sequentially starting at ``base_port``. Ports recorded by existing
    instances are never handed out, even while those instances are stopped.
    """

    base_port: int = 0
    host: str = "127.0.0.1"
    max_attempts: int = 64

    def __post_init__(self) -> None:
        """Validate initialiser parameters."""
        if not 0 <= self.base_port <= MAX_PORT:
            raise PortAllocationError(f"Base port must be between 0 and {MAX_PORT}.")

    def pick(self, reserved: Iterable[int] = ()) -> int:
        """Return a free port that is not in *reserved*."""
        used = set(reserved)
        if self.base_port == 0:
            for _ in range(self.max_attempts):
                candidate = self._bind(0)
                if candidate not in used:
                    return candidate
            raise PortAllocationError(
                f"No free port found after {self.max_attempts} attempts."
            )

        candidate = self.base_port
        while candidate <= MAX_PORT:
            if candidate not in used and self.is_free(candidate):
                return candidate
            candidate += 1
        raise PortAllocationError(f"No free port at or above {self.base_port}.")

    def is_free(self, port: int) -> bool:
        """Return True when *port* can be bound on the configured host."""
        try:
            self._bind(port)
        except OSError:
            return False
        return True

    def _bind(self, port: int) -> int:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((self.host, port))
            return int(sock.getsockname()[1])


__all__ = [
    "ID_ALPHABET",
    "ID_LENGTH",
    "PortAllocationError",
    "PortAllocator",
    "generate_instance_id",
]
