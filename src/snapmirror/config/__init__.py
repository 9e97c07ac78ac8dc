# Author: PB
# Maintainer: PB
# Original date: 2025.05.13
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/snapmirror/config/__init__.py

"""Configuration loading and source models."""
