"""
Request dispatcher — the errno boundary of the operation table.

Bridges that speak the C calling convention expect every operation to
return synchronously with either a result or a negated ``errno``. The
dispatcher runs one operation of a :class:`Passthrough` table and folds
its outcome into that shape:

* success returns the operation's value (``0`` for operations without one);
* ``OSError`` returns ``-errno``, passed through untranslated;
* ``MemoryError`` returns ``-ENOMEM``;
* anything else is a bug in the table: it is logged with its traceback and
  returned as ``-EIO`` rather than unwinding into the bridge.

Nothing is retried.
"""

from __future__ import annotations

import errno
import logging
from typing import Any

from .operations import Passthrough

logger = logging.getLogger("passthroughfs.dispatch")


class RequestDispatcher:
    """Run operations against a passthrough table with errno-style results.

    Args:
        operations: The operation table to dispatch to.
    """

    def __init__(self, operations: Passthrough) -> None:
        self.operations = operations

    def __call__(self, op: str, *args: Any) -> Any:
        """Dispatch ``op`` with ``args``.

        Returns:
            The operation result, ``0`` for void operations, or a negative
            error code.
        """
        try:
            result = self.operations(op, *args)
        except OSError as exc:
            code = exc.errno or errno.EIO
            logger.debug("%s failed: %s", op, exc)
            return -code
        except MemoryError:
            logger.warning("%s ran out of memory", op)
            return -errno.ENOMEM
        except Exception:
            logger.exception("Unhandled error in %s", op)
            return -errno.EIO
        return 0 if result is None else result
