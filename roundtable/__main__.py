"""Run the API server: python -m roundtable [host] [port]."""
from __future__ import annotations

import sys

import uvicorn


def main() -> None:
    host = sys.argv[1] if len(sys.argv) > 1 else "0.0.0.0"
    port = int(sys.argv[2]) if len(sys.argv) > 2 else 8000
    uvicorn.run("roundtable.main:app", host=host, port=port, reload=False, log_level="info")


if __name__ == "__main__":
    main()
