from __future__ import annotations

from typing import Tuple

from hellojohn.config import get_settings


def parse_listen_addr(addr: str) -> Tuple[str, int]:
    """Split ``host:port`` (``:8082`` listens on every interface)."""
    host, _, port = (addr or ":8082").rpartition(":")
    host = host.strip("[]") or "0.0.0.0"
    return host, int(port or 8082)


def main() -> None:
    import uvicorn

    host, port = parse_listen_addr(get_settings().server_addr)
    uvicorn.run("hellojohn.app:app", host=host, port=port)


if __name__ == "__main__":
    main()
