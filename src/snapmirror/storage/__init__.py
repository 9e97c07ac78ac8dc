# Author: PB
# Maintainer: PB
# Original date: 2025.06.02
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/snapmirror/storage/__init__.py

"""Snapshot backends, rsync transfer and the backup history store."""
