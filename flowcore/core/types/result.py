"""Result type used for operational outcomes across the engine.

Re-exports the ``result`` package so call sites import from one place.
"""

from __future__ import annotations

from result import Err, Ok, Result, is_err, is_ok

__all__ = ['Ok', 'Err', 'Result', 'is_ok', 'is_err']
