# -*- coding: utf-8 -*-
"""
Service package for the scale companion.

Groups the pieces with side effects: logging setup, weight history
persistence and the scale session that drives Bluetooth backends.
"""

__all__ = ["logging", "scale", "storage"]
