# Author: PB
# Maintainer: PB
# Original date: 2025.06.01
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/snapmirror/system/__init__.py

"""Process execution, logging, console display and exceptions."""
