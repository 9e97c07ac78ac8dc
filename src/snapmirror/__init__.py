# Author: PB
# Maintainer: PB
# Original date: 2025.05.10
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/snapmirror/__init__.py

"""snapmirror - mirror ZFS and restic snapshots into plain directories."""
