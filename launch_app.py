#!/usr/bin/env python3
"""
Launcher for the Patient Payment Tracker Streamlit app

Runs the app with the current interpreter, so it works from a source checkout
and from the installed ``payment-tracker-launch`` script alike.
"""

import argparse
import subprocess
import sys
from pathlib import Path

APP_FILE = Path(__file__).resolve().parent / "streamlit_app.py"


def streamlit_command(app_file=APP_FILE, python=None, port=8501, headless=False):
    """Command line that serves the Streamlit app."""
    return [
        str(python or sys.executable), "-m", "streamlit", "run", str(app_file),
        "--browser.gatherUsageStats", "false",
        "--server.headless", str(headless).lower(),
        "--server.port", str(port),
    ]


def main(argv=None):
    """Launch the Streamlit app; returns the server's exit code."""
    ap = argparse.ArgumentParser(description="Start the Patient Payment Tracker web interface")
    ap.add_argument("--port", type=int, default=8501, help="Port to serve on (default 8501)")
    ap.add_argument("--headless", action="store_true", help="Do not open a browser window")
    args = ap.parse_args(argv)

    if not APP_FILE.exists():
        print(f"❌ Streamlit app not found: {APP_FILE}")
        return 1

    print("🚀 Starting Patient Payment Tracker...")
    print(f"📍 App will be available at: http://localhost:{args.port}")
    print("💡 To stop the server, press Ctrl+C")
    try:
        return subprocess.run(streamlit_command(APP_FILE, port=args.port, headless=args.headless)).returncode
    except KeyboardInterrupt:
        print("\n👋 Stopping server...")
        return 0


if __name__ == "__main__":
    sys.exit(main())
