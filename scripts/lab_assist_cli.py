#!/usr/bin/env python3
"""
Run the Lab Assist CLI from a source checkout.

Same as the installed ``lab-assist`` command:
    scripts/lab_assist_cli.py repl
    scripts/lab_assist_cli.py status
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from lab_assist.cli import main

if __name__ == "__main__":
    sys.exit(main())
