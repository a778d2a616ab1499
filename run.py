#!/usr/bin/env python3
"""
Bootstrap runner:
- Creates a local virtual environment in .venv if missing
- Installs the project into it
- Runs the relay with uvicorn

Usage: python run.py
"""
import os
import subprocess
import sys
import venv
from pathlib import Path


ROOT = Path(__file__).parent.resolve()
VENV_DIR = ROOT / ".venv"


def venv_python() -> Path:
    if os.name == "nt":
        return VENV_DIR / "Scripts" / "python.exe"
    return VENV_DIR / "bin" / "python"


def ensure_venv():
    if not VENV_DIR.exists():
        print("Creating virtual environment at .venv ...")
        venv.EnvBuilder(with_pip=True).create(str(VENV_DIR))
    else:
        print("Virtual environment exists.")


def pip_install():
    print("Installing dependencies ...")
    if not (ROOT / "pyproject.toml").exists():
        print("pyproject.toml not found.")
        sys.exit(1)
    subprocess.check_call([str(venv_python()), "-m", "pip", "install", "-U", "pip", "wheel", "setuptools"])
    subprocess.check_call([str(venv_python()), "-m", "pip", "install", "-e", str(ROOT)])


def run_server():
    port = os.getenv("PORT", "8080")
    print(f"Starting relay at http://127.0.0.1:{port}/ui ...")
    # relay.main.run exits with status 1 when OPENROUTER_API_KEY is missing
    subprocess.check_call([str(venv_python()), "-m", "relay.main"], cwd=str(ROOT))


if __name__ == "__main__":
    ensure_venv()
    pip_install()
    run_server()
