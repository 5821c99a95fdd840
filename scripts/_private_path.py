"""Path wrapper that hides the user's home directory when printed.

Examples
--------
>>> from pathlib import Path
>>> str(PrivatePath(Path.home() / ".claude" / "plugins"))
'~/.claude/plugins'
>>> str(PrivatePath(Path.home()))
'~'
>>> str(PrivatePath("/opt/plugins"))
'/opt/plugins'
"""

from __future__ import annotations

import os
import pathlib


class PrivatePath(pathlib.Path):
    """A `pathlib.Path` whose ``str()`` collapses ``$HOME`` to ``~``.

    Meant for console output only. ``os.fspath`` still returns the real path.
    """

    def __str__(self) -> str:
        raw = super().__str__()
        home = str(pathlib.Path.home())
        if raw == home:
            return "~"
        if raw.startswith(home + os.sep):
            return "~" + raw[len(home) :]
        return raw

    def __fspath__(self) -> str:
        return super().__str__()
