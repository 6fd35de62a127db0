#!/usr/bin/env python3
"""
icons.py - Status glyphs shared by ankivault status output.
"""

SUCCESS = "✅"
WARNING = "⚠️"
ERROR = "❌"
INFO = "ℹ️"
