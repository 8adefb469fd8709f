"""Storyloom — dev launcher. Starts the API server in watch mode."""

import argparse
import os
import subprocess
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "127.0.0.1")
PORT = os.getenv("PORT", "13013")


def main():
    parser = argparse.ArgumentParser(description="Storyloom dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Where story state is kept (default: ./data)")
    parser.add_argument("--backend", choices=["http", "transformers"], default=None,
                        help="Model backend (default: STORYLOOM_BACKEND or http)")
    parser.add_argument("--fresh", action="store_true",
                        help="Discard any saved story before starting")
    args = parser.parse_args()

    # Build env for the server so it picks up the same choices
    env = os.environ.copy()
    if args.data_dir:
        env["DATA_DIR"] = str(args.data_dir.resolve())
    if args.backend:
        env["STORYLOOM_BACKEND"] = args.backend

    if args.fresh:
        from storyloom.storage import Storage
        Storage(args.data_dir or Path(os.getenv("DATA_DIR", ROOT / "data"))).clear()

    print(f"Starting storyloom on http://{HOST}:{PORT} ...")
    proc = subprocess.Popen(
        [sys.executable, "-m", "uvicorn", "storyloom.app:app", "--reload",
         "--host", HOST, "--port", PORT],
        cwd=ROOT, env=env,
    )
    try:
        proc.wait()
    except KeyboardInterrupt:
        print("\nShutting down...")
        proc.terminate()
        proc.wait()


if __name__ == "__main__":
    main()
