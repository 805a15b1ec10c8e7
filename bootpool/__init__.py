"""bootpool: Platform Image management for bootable ZFS pools.

Core design goals:
- Stamp directories are write-once; only the platform/boot symlinks move
- The boot menu is derived, rebuilt from disk inventory on every change
- Downloads are verified in a staging area before anything is published
- Loader code survives individual disk failures
- One explicit Session per run, no process-wide state
"""

__all__ = []
