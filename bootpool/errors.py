"""Error taxonomy; each class maps to a process exit code.

- UserError: bad arguments, ambiguous pool, missing image. Nothing changed.
- OperationError: network, checksum, or archive problems. Nothing changed,
  because risky work is staged before any permanent write.
- FatalError: a destructive step has begun and a post-condition failed.
  On-disk state may be inconsistent.
- CorruptionError: a structural invariant was violated on read. Never
  repaired automatically.
"""

from __future__ import annotations


class BootpoolError(RuntimeError):
    exit_code = 1


class UserError(BootpoolError):
    exit_code = 1


class OperationError(BootpoolError):
    exit_code = 1


class FatalError(BootpoolError):
    exit_code = 2


class CorruptionError(BootpoolError):
    exit_code = 3
