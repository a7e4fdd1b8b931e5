#!/usr/bin/env python3
"""
Simple script to start the dashboard API backend
Run this before starting the dashboard frontend
"""

import os
import subprocess
import sys


def main():
    project_dir = os.path.dirname(os.path.abspath(__file__))
    port = os.environ.get("DASHBOARD_PORT", "8001")

    print("🚀 Starting Field Sales Dashboard API...")
    print(f"📁 Project directory: {project_dir}")

    try:
        subprocess.run([
            sys.executable, "-m", "uvicorn",
            "main:app",
            "--host", "0.0.0.0",
            "--port", port,
            "--reload"
        ], cwd=project_dir)
    except KeyboardInterrupt:
        print("\n👋 Shutting down API server...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")


if __name__ == "__main__":
    main()
