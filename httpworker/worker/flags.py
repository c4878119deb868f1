"""Run flag editing for guest processes.

The guest needs to read and write its socket, and to read the script file
when the script is imported from disk. The caller's flags are augmented with
exactly those grants and nothing else.
"""

from __future__ import annotations

from typing import Iterable, List, Optional

ALLOW_ALL_FLAGS = ("--allow-all", "-A")
ALLOW_READ = "--allow-read"
ALLOW_WRITE = "--allow-write"


def _extend_flag(flag: str, value: str) -> str:
    """Append comma separated values to a ``--flag=list`` entry."""
    if flag.endswith("="):
        return f"{flag}{value}"
    return f"{flag},{value}"


def build_run_flags(
    run_flags: Iterable[str],
    socket_path: str,
    script_path: Optional[str] = None,
) -> List[str]:
    """
    Return a copy of ``run_flags`` that lets the guest use its socket.

    For each of read and write access:
    - a blanket flag (``--allow-read``, ``--allow-all``) already covers it
    - an explicit list (``--allow-read=a,b``) gets the needed paths appended
    - no flag at all gets a new explicit flag with exactly the needed paths

    Args:
        run_flags: Flags supplied by the caller
        socket_path: Socket the guest will listen on
        script_path: Script file, when the script is imported from disk

    Returns:
        New flag list
    """
    read_value = socket_path if script_path is None else f"{socket_path},{script_path}"
    write_value = socket_path

    read_found = False
    write_found = False
    flags: List[str] = []

    for flag in run_flags:
        if flag == ALLOW_READ or flag in ALLOW_ALL_FLAGS:
            read_found = True
        if flag == ALLOW_WRITE or flag in ALLOW_ALL_FLAGS:
            write_found = True
        if flag.startswith(f"{ALLOW_READ}="):
            read_found = True
            flag = _extend_flag(flag, read_value)
        elif flag.startswith(f"{ALLOW_WRITE}="):
            write_found = True
            flag = _extend_flag(flag, write_value)
        flags.append(flag)

    if not read_found:
        flags.append(f"{ALLOW_READ}={read_value}")
    if not write_found:
        flags.append(f"{ALLOW_WRITE}={write_value}")

    return flags
