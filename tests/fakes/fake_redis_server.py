"""Stand-in for ``redis-server`` used by the test suite.

Understands the ``--flag value`` pairs the supervisor passes, records its
argv to ``<dir>/argv.json``, serves a line-based SET/GET protocol on
``127.0.0.1:<port>`` and prints the redis readiness line.

Behaviour switches (environment):
    FAKE_REDIS_SILENT=1     never print the readiness line
    FAKE_REDIS_EXIT=<code>  print a line and exit with <code> before ready
"""

from __future__ import annotations

import json
import os
from pathlib import Path
import socketserver
import sys
import threading
import time

STORE: dict[str, str] = {}
LOCK = threading.Lock()


def parse_flags(argv: list[str]) -> dict[str, str]:
    flags: dict[str, str] = {}
    i = 0
    while i < len(argv):
        name = argv[i]
        value = argv[i + 1] if i + 1 < len(argv) else ""
        flags.setdefault(name, value)
        i += 2
    return flags


class Handler(socketserver.StreamRequestHandler):
    def handle(self) -> None:
        for raw in self.rfile:
            parts = raw.decode("utf-8").split()
            if not parts:
                continue
            command = parts[0].upper()
            with LOCK:
                if command == "SET" and len(parts) == 3:
                    STORE[parts[1]] = parts[2]
                    reply = "OK"
                elif command == "GET" and len(parts) == 2:
                    reply = STORE.get(parts[1], "")
                elif command == "PING":
                    reply = "PONG"
                else:
                    reply = f"ERR unknown command '{parts[0]}'"
            self.wfile.write(f"{reply}\n".encode())
            self.wfile.flush()


class Server(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True


def main() -> int:
    argv = sys.argv[1:]
    flags = parse_flags(argv)
    data_dir = Path(flags.get("--dir", "."))
    (data_dir / "argv.json").write_text(json.dumps(argv), encoding="utf-8")
    print(f"{os.getpid()}:C * oO0OoO0OoO0Oo fake redis is starting", flush=True)

    exit_code = os.environ.get("FAKE_REDIS_EXIT")
    if exit_code is not None:
        print("fatal: configured to fail", flush=True)
        return int(exit_code)

    if os.environ.get("FAKE_REDIS_SILENT") == "1":
        while True:
            time.sleep(1)

    server = Server(("127.0.0.1", int(flags["--port"])), Handler)
    print(f"{os.getpid()}:M * Ready to accept connections tcp", flush=True)
    server.serve_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
