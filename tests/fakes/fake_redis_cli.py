"""Stand-in for ``redis-cli``: ``fake_redis_cli -p <port> <command...>``."""

from __future__ import annotations

import socket
import sys


def main() -> int:
    args = sys.argv[1:]
    if len(args) < 3 or args[0] != "-p":
        print("usage: fake_redis_cli -p <port> <command...>", file=sys.stderr)
        return 2
    port = int(args[1])
    with socket.create_connection(("127.0.0.1", port), timeout=5) as conn:
        conn.sendall((" ".join(args[2:]) + "\n").encode())
        reply = conn.makefile("r", encoding="utf-8").readline()
    if reply.startswith("ERR"):
        print(reply.rstrip("\n"), file=sys.stderr)
        return 1
    sys.stdout.write(reply)
    return 0


if __name__ == "__main__":
    sys.exit(main())
