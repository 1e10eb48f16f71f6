#!/usr/bin/env python3
"""
btrfs-recovery - Launcher
Runs the CLI from a source checkout, elevating privileges for raw device access.

Usage:
    python run.py fix /dev/sdb1 -b 30572544
    python run.py --no-sudo fix block.bin -o fixed.bin
"""

import os
import subprocess
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent / "src"))


def is_root():
    """Check if the current process is running as root"""
    return os.geteuid() == 0


def relaunch_with_sudo(args):
    """Relaunch the script with sudo"""
    print("\nElevating privileges for raw device access...\n", file=sys.stderr)
    command = ["sudo", "-E", sys.executable, __file__, "--no-sudo", *args]
    try:
        result = subprocess.run(command)
    except KeyboardInterrupt:
        print("\nOperation cancelled by user.", file=sys.stderr)
        sys.exit(2)
    sys.exit(result.returncode)


def main():
    """Main launcher entry point"""
    args = sys.argv[1:]
    if args and args[0] == "--no-sudo":
        args = args[1:]
    elif not is_root():
        relaunch_with_sudo(args)

    from btrfs_recovery.ui.cli import main as cli_main
    sys.argv = [sys.argv[0], *args]
    cli_main()


if __name__ == "__main__":
    main()
