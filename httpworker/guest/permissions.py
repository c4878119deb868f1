"""Guest runtime permission policy.

The guest command line carries permission flags:

    --allow-read[=path,...]    --allow-write[=path,...]
    --allow-net[=host,...]     --allow-run[=program,...]
    --allow-all / -A

A bare flag grants everything of its kind and a flag with a list grants only
those entries. Without the flag nothing of that kind is granted. The policy is
enforced with a ``sys.addaudithook`` hook that rejects file opens, directory
listings, filesystem changes, outbound connections and process spawns outside
the grants.

The interpreter's own install (its prefixes, stdlib and site-packages) and the
packages already loaded stay readable so imports keep working after the hook
is installed. The working directory and other ``sys.path`` entries do not.
"""

from __future__ import annotations

import argparse
import os
import site
import sys
import sysconfig
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Tuple, Union

FlagEntries = Optional[List[Union[bool, str]]]

WRITE_OPEN_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_APPEND | os.O_CREAT | os.O_TRUNC

# Audit events that change the filesystem, mapped to the argument positions
# holding the affected paths.
WRITE_EVENTS = {
    "os.remove": (0,),
    "os.rmdir": (0,),
    "os.mkdir": (0,),
    "os.chmod": (0,),
    "os.chown": (0,),
    "os.truncate": (0,),
    "os.utime": (0,),
    "os.rename": (0, 1),
    "os.link": (0, 1),
    "os.symlink": (1,),
    "shutil.rmtree": (0,),
}


# Audit events that list a directory.
LIST_EVENTS = ("os.listdir", "os.scandir")

# Audit events that start a program, mapped to the argument position holding it.
SPAWN_EVENTS = {
    "subprocess.Popen": 0,
    "os.exec": 0,
    "os.posix_spawn": 0,
    "os.spawn": 1,
}

SYSTEM_SHELL = "/bin/sh"


def add_permission_arguments(parser: argparse.ArgumentParser) -> None:
    """Register the permission flags on a guest argument parser."""
    for name, metavar in (
        ("read", "PATHS"),
        ("write", "PATHS"),
        ("net", "HOSTS"),
        ("run", "PROGRAMS"),
    ):
        parser.add_argument(
            f"--allow-{name}",
            action="append",
            nargs="?",
            const=True,
            metavar=metavar,
            help=f"Allow {name} access, optionally only to a comma-separated list",
        )
    parser.add_argument("-A", "--allow-all", action="store_true", help="Allow everything")


def _scope(entries: FlagEntries) -> Optional[Tuple[str, ...]]:
    """
    Collapse repeated flag values.

    Returns:
        None for unrestricted access, otherwise the allowed entries
    """
    if entries is None:
        return ()
    if any(entry is True for entry in entries):
        return None
    allowed: List[str] = []
    for entry in entries:
        allowed.extend(part for part in str(entry).split(",") if part)
    return tuple(allowed)


def _normalize(path: Any) -> Optional[str]:
    if isinstance(path, int):
        return None
    try:
        path = os.fsdecode(os.fspath(path))
    except TypeError:
        return None
    return os.path.normpath(os.path.abspath(path))


def _is_within(path: str, roots: Iterable[str]) -> bool:
    for root in roots:
        try:
            if os.path.commonpath([path, root]) == root:
                return True
        except ValueError:
            continue
    return False


def default_read_roots() -> List[str]:
    """
    Locations the interpreter loads code from.

    Covers the interpreter prefixes, the stdlib and site-packages directories,
    and every top-level package or module already imported (its package
    directories, or the module file itself).
    """
    roots = [sys.prefix, sys.base_prefix, sys.exec_prefix, sys.base_exec_prefix]
    roots.extend(site.getsitepackages())
    if site.ENABLE_USER_SITE:
        roots.append(site.getusersitepackages())
    paths = sysconfig.get_paths()
    roots.extend(paths[key] for key in ("stdlib", "platstdlib", "purelib", "platlib") if key in paths)

    for name, module in list(sys.modules.items()):
        if "." in name:
            continue
        package_path = getattr(module, "__path__", None)
        if package_path is not None:
            roots.extend(package_path)
            continue
        location = getattr(module, "__file__", None)
        if location:
            roots.append(location)

    normalized = []
    for root in roots:
        root = _normalize(root)
        if root and root not in normalized:
            normalized.append(root)
    return normalized


def _program(event: str, args: Sequence[Any]) -> Any:
    """The program a spawn event is about to start."""
    program = args[SPAWN_EVENTS[event]]
    if program is None and event == "subprocess.Popen":
        argv = args[1]
        if isinstance(argv, (str, bytes)):
            return argv
        return next(iter(argv), "")
    return program


@dataclass
class GuestPermissions:
    """
    Grants of one guest process.

    Each field is None for unrestricted access or a tuple of allowed entries.
    """

    read: Optional[Tuple[str, ...]] = ()
    write: Optional[Tuple[str, ...]] = ()
    net: Optional[Tuple[str, ...]] = ()
    run: Optional[Tuple[str, ...]] = ()
    implicit_read: Tuple[str, ...] = ()

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> GuestPermissions:
        """Build the policy from parsed guest arguments."""
        if args.allow_all:
            return cls(read=None, write=None, net=None, run=None)

        def paths(entries: FlagEntries) -> Optional[Tuple[str, ...]]:
            scope = _scope(entries)
            if scope is None:
                return None
            return tuple(p for p in (_normalize(entry) for entry in scope) if p)

        return cls(
            read=paths(args.allow_read),
            write=paths(args.allow_write),
            net=_scope(args.allow_net),
            run=_scope(args.allow_run),
            implicit_read=tuple(default_read_roots()),
        )

    @property
    def unrestricted(self) -> bool:
        return self.read is None and self.write is None and self.net is None and self.run is None

    def can_read(self, path: Any) -> bool:
        if self.read is None:
            return True
        normalized = _normalize(path)
        if normalized is None:
            return True
        # Anything writable is readable too.
        return _is_within(normalized, self.read + self.implicit_read) or self.can_write(path)

    def can_write(self, path: Any) -> bool:
        if self.write is None:
            return True
        normalized = _normalize(path)
        if normalized is None:
            return True
        return _is_within(normalized, self.write)

    def can_connect(self, address: Any) -> bool:
        if self.net is None:
            return True
        if not isinstance(address, tuple) or len(address) < 2:
            # Unix sockets are governed by the filesystem grants.
            return True
        host, port = address[0], address[1]
        return host in self.net or f"{host}:{port}" in self.net

    def can_run(self, program: Any) -> bool:
        if self.run is None:
            return True
        try:
            program = os.fsdecode(os.fspath(program))
        except TypeError:
            return False
        return program in self.run or os.path.basename(program) in self.run

    def check_read(self, path: Any) -> None:
        if not self.can_read(path):
            raise PermissionError(
                f'Requires read access to "{os.fsdecode(path)}", run again with the --allow-read flag'
            )

    def check_write(self, path: Any) -> None:
        if not self.can_write(path):
            raise PermissionError(
                f'Requires write access to "{os.fsdecode(path)}", run again with the --allow-write flag'
            )

    def check_connect(self, address: Any) -> None:
        if not self.can_connect(address):
            host, port = address[0], address[1]
            raise PermissionError(
                f'Requires net access to "{host}:{port}", run again with the --allow-net flag'
            )

    def check_run(self, program: Any) -> None:
        if not self.can_run(program):
            raise PermissionError(
                f'Requires run access to "{program}", run again with the --allow-run flag'
            )

    def audit(self, event: str, args: Sequence[Any]) -> None:
        """Audit hook body; raising here aborts the audited operation."""
        if event == "open":
            path, mode, flags = args[0], args[1], args[2]
            if path is None or isinstance(path, int):
                return
            if isinstance(mode, str):
                writing = any(c in mode for c in "wax+")
            else:
                writing = bool((flags or 0) & WRITE_OPEN_FLAGS)
            if writing:
                self.check_write(path)
            else:
                self.check_read(path)
        elif event in WRITE_EVENTS:
            for index in WRITE_EVENTS[event]:
                if index < len(args) and args[index] is not None:
                    self.check_write(args[index])
        elif event in LIST_EVENTS:
            path = args[0] if args[0] is not None else "."
            self.check_read(path)
        elif event == "socket.connect":
            self.check_connect(args[1])
        elif event in SPAWN_EVENTS:
            self.check_run(_program(event, args))
        elif event == "os.system":
            self.check_run(SYSTEM_SHELL)

    def install(self) -> None:
        """Install the audit hook. Hooks cannot be removed once added."""
        if self.unrestricted:
            return
        sys.addaudithook(self.audit)
