#!/usr/bin/env python3
"""Daemon runner"""
import sys
from bacup.cli import main

if __name__ == '__main__':
    sys.exit(main())
