"""Invoking-user resolution.

Provisioning runs as root, but many units need the *human* account:
home directory for dotfiles, ownership target for created files.
Resolution happens once per run and the result travels in
:class:`~provisioner.config.models.RunConfig`.

Precedence:

1. Explicit hint (``SUDO_USER`` env var, or a caller-supplied name)
2. First regular account in the password database (UID 1000..65533)
3. The current process user
"""

from __future__ import annotations

import logging
import os
import pwd
from typing import Callable, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

#: First UID assigned to regular (human) accounts on Debian/Ubuntu.
FIRST_REGULAR_UID: int = 1000

#: ``nobody`` is never a provisioning target.
NOBODY_UID: int = 65534


class Identity(BaseModel):
    """The account that provisioning acts on behalf of."""

    model_config = ConfigDict(frozen=True)

    name: str
    uid: int
    gid: int
    home: str
    source: str = ""


def _from_pwd(entry: pwd.struct_passwd, source: str) -> Identity:
    return Identity(
        name=entry.pw_name,
        uid=entry.pw_uid,
        gid=entry.pw_gid,
        home=entry.pw_dir,
        source=source,
    )


def first_regular_account(
    entries: Iterable[pwd.struct_passwd],
) -> Optional[pwd.struct_passwd]:
    """Return the lowest-UID regular account in *entries*, or ``None``."""
    regular: List[pwd.struct_passwd] = [
        e for e in entries if FIRST_REGULAR_UID <= e.pw_uid < NOBODY_UID
    ]
    if not regular:
        return None
    return min(regular, key=lambda e: e.pw_uid)


def resolve_identity(
    hint: Optional[str] = None,
    *,
    getpwnam: Callable[[str], pwd.struct_passwd] = pwd.getpwnam,
    getpwall: Callable[[], List[pwd.struct_passwd]] = pwd.getpwall,
    getpwuid: Callable[[int], pwd.struct_passwd] = pwd.getpwuid,
) -> Identity:
    """Resolve the invoking user.

    *hint* defaults to ``SUDO_USER``.  An unknown hint is logged and
    ignored rather than trusted.
    """
    name = hint if hint is not None else os.environ.get("SUDO_USER", "")
    if name and name != "root":
        try:
            return _from_pwd(getpwnam(name), "hint")
        except KeyError:
            logger.warning("Invoking-user hint %r is not a known account; ignoring", name)

    entry = first_regular_account(getpwall())
    if entry is not None:
        return _from_pwd(entry, "first-regular-account")

    return _from_pwd(getpwuid(os.getuid()), "process")
