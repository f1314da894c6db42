"""
SeedGuard — seed-derived PGP identity for secure messaging.

One memorable phrase. Every key you will ever need.
Lose the device, keep the phrase, get your identity back.
"""

import os

__version__ = "0.1.0"
__author__ = "smilinTux"

SEEDGUARD_HOME = os.environ.get("SEEDGUARD_HOME", "~/.seedguard")
