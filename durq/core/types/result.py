# core/types/result.py
"""Result type used for operational outcomes.

Store and worker operations return ``Ok(value)`` or ``Err(error)`` instead of
raising for infrastructure failures. The implementation comes from the
``result`` package; this module is the single import point inside durq.
"""

from result import Err, Ok, Result, is_err, is_ok

__all__ = ['Result', 'Ok', 'Err', 'is_ok', 'is_err']
