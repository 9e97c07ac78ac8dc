# Author: PB
# Maintainer: PB
# Original date: 2025.06.12
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/snapmirror/core/__init__.py

"""Reconciliation engine and run driver."""
