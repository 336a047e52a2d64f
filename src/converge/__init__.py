# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Converge - desired-state reconciliation over a remote job channel."""

__version__ = "0.3.0"
