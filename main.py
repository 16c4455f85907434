"""Story Engine dev launcher. Starts the API server in watch mode."""

import argparse
import os
import signal
import subprocess
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = os.getenv("PORT", "13013")


def main():
    parser = argparse.ArgumentParser(description="Story Engine dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: ./data)")
    parser.add_argument("--log-level", default=None,
                        help="Logging level for the server (default: INFO)")
    args = parser.parse_args()

    # Build env for the subprocess so the server picks up the same data dir
    env = os.environ.copy()
    if args.data_dir:
        env["DATA_DIR"] = str(args.data_dir.resolve())
    if args.log_level:
        env["LOG_LEVEL"] = args.log_level

    procs: list[subprocess.Popen] = []

    def shutdown(*_):
        print("\nShutting down...")
        for p in procs:
            p.terminate()
        for p in procs:
            p.wait()
        sys.exit(0)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    print(f"Starting server on http://localhost:{PORT} ...")
    procs.append(subprocess.Popen(
        [sys.executable, "-m", "uvicorn", "story_engine.app:app", "--reload", "--host", HOST, "--port", PORT],
        cwd=ROOT, env=env,
    ))

    for p in procs:
        p.wait()


if __name__ == "__main__":
    main()
