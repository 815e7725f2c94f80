#!/usr/bin/env python3
"""rsync-quarterly: quarterly full and daily incremental hard-linked backups using rsync."""
from __future__ import annotations

import argparse
import asyncio
import getpass
import os
import re
import shlex
import signal
import sys
from datetime import datetime
from typing import TYPE_CHECKING, Callable, NamedTuple, NoReturn, Sequence

from rich.console import Console
from rich.markup import escape

if TYPE_CHECKING:
    from types import FrameType

APPNAME = "rsync-quarterly"
VERBOSE = False

ROOT_UID = 0
MEDIA_ROOT = "/media"
DEFAULT_SOURCE = "/home"
BACKUP_DIR = "backup"
DEFAULT_RSYNC_FLAGS = ("-ah", "--info=progress2,stats")
DEFAULT_EXCLUDE_DIRS = (".cache", ".thumbnails")
SEPARATOR = "-" * 32
BACKUP_NAME_RE = re.compile(r"\d{4}-\d{2}-\d{2}")
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

console = Console(soft_wrap=True, highlight=False, emoji=False)
err_console = Console(stderr=True, soft_wrap=True, highlight=False, emoji=False)

COLORS = {
    "green": "bright_green",
    "magenta": "bright_magenta",
    "yellow": "bright_yellow",
    "red": "bright_red",
    "orange": "yellow",
}


def style(text: str, color: str | None = None, *, bold: bool = False) -> str:
    """Return text wrapped in console markup."""
    styles = []
    if bold:
        styles.append("bold")
    if color:
        styles.append(COLORS.get(color, color))
    if not styles:
        return text
    return f"[{' '.join(styles)}]{text}[/]"


def sanitize(s: str) -> str:
    """Return a sanitized version of the string."""
    # Filenames reported by rsync are not guaranteed to be valid UTF-8
    return s.encode("utf-8", "surrogateescape").decode("utf-8", "replace")


def log(message: str, level: str = "info") -> None:
    """Log a message with the specified log level.

    ``message`` is console markup; escape untrusted text before passing it.
    """
    levels = {"info": "", "error": escape("[ERROR] ")}
    output = err_console if level == "error" else console
    message = sanitize(message)
    output.print(f"{style(APPNAME, bold=True)}: {levels[level]}{message}")


def log_info(message: str) -> None:
    """Log an info message to stdout."""
    log(message, "info")


def log_error(message: str) -> None:
    """Log an error message to stderr."""
    log(style(message, "red", bold=True), "error")


def terminate_script(
    _signal_number: int,
    _frame: FrameType | None,
) -> None:
    """Terminate the script when CTRL+C is pressed."""
    log_info("SIGINT caught.")
    sys.exit(1)


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------


class BackupError(Exception):
    """Base class for errors that end a backup run with a specific exit code."""

    exit_code = 1


class PrivilegeError(BackupError):
    """Not running with the required elevation."""

    exit_code = 1


class ArgumentError(BackupError):
    """Bad or missing command line argument."""

    exit_code = 1


class DirectoryCreationError(BackupError):
    """The quarter or backup directory could not be created."""

    def __init__(self, path: str, errno: int | None, exit_code: int = 2) -> None:
        super().__init__(f"Error {errno}: Could not create directory {path}")
        self.path = path
        self.errno = errno
        self.exit_code = exit_code


class UserAbort(BackupError):
    """The user declined the confirmation prompt."""

    exit_code = 5


class CopyEngineError(BackupError):
    """rsync exited with a non-zero status."""

    exit_code = 6

    def __init__(self, status: int, message: str | None = None) -> None:
        super().__init__(message or f"rsync exited with status {status}")
        self.status = status


# -----------------------------------------------------------------------------
# Path planning
# -----------------------------------------------------------------------------


class QuarterKey(NamedTuple):
    """Calendar year and quarter (1-4)."""

    year: int
    quarter: int

    def __str__(self) -> str:
        return f"{self.year}q{self.quarter}"


class BackupPaths(NamedTuple):
    """Destination paths of a single run."""

    quarter_path: str
    backup_path: str
    log_file: str


def quarter_of(month: int | str) -> int:
    """Return the quarter of a month given as 1-12 or as a (zero padded) string."""
    if isinstance(month, str):
        if not month.strip().isdecimal():
            msg = f"Invalid month: {month!r}"
            raise ValueError(msg)
        # Always base 10, "08" and "09" are months, not bad octal
        month = int(month.strip(), 10)
    if not 1 <= month <= 12:  # noqa: PLR2004
        msg = f"Invalid month: {month!r}"
        raise ValueError(msg)
    return (month - 1) // 3 + 1


def local_time(now: datetime) -> datetime:
    """Return ``now`` in local time; naive datetimes are assumed to be local."""
    return now.astimezone() if now.tzinfo is not None else now


def quarter_key(now: datetime) -> QuarterKey:
    """Return the local calendar quarter of ``now``."""
    now = local_time(now)
    return QuarterKey(now.year, quarter_of(now.month))


def plan_paths(now: datetime, host: str, root: str) -> BackupPaths:
    """Compute the quarter directory, backup directory and log file for ``now``.

    The layout is ``<root>/backup/<host>/<year>q<quarter>/<YYYY-MM-DD>`` with the
    run log next to it as ``<YYYY-MM-DD>.log``. No filesystem access is done.
    """
    if not host:
        msg = "Host identity cannot be empty."
        raise ValueError(msg)
    today = local_time(now).strftime("%Y-%m-%d")
    quarter_path = os.path.join(root, BACKUP_DIR, host, str(quarter_key(now)))
    return BackupPaths(
        quarter_path,
        os.path.join(quarter_path, today),
        os.path.join(quarter_path, f"{today}.log"),
    )


# -----------------------------------------------------------------------------
# Backup catalog
# -----------------------------------------------------------------------------


class BackupEntry(NamedTuple):
    """A dated backup directory inside a quarter directory."""

    path: str
    name: str
    ctime_ns: int


def sort_backups(entries: Sequence[BackupEntry]) -> list[BackupEntry]:
    """Return the entries most recent first, newest name first on equal times."""
    return sorted(entries, key=lambda e: (e.ctime_ns, e.name), reverse=True)


def find_backups(quarter_path: str) -> list[BackupEntry]:
    """Return all backups in the quarter directory, most recent first.

    Only directories named ``YYYY-MM-DD`` count as backups; log files and
    anything else living next to them are ignored.
    """
    if not os.path.isdir(quarter_path):
        return []
    entries = []
    with os.scandir(quarter_path) as it:
        for entry in it:
            if not BACKUP_NAME_RE.fullmatch(entry.name):
                continue
            if not entry.is_dir(follow_symlinks=False):
                continue
            st = entry.stat(follow_symlinks=False)
            entries.append(BackupEntry(entry.path, entry.name, st.st_ctime_ns))
    return sort_backups(entries)


def locate_previous_backup(
    catalog: Sequence[BackupEntry],
    candidate: str,
) -> str | None:
    """Return the backup to use as ``--link-dest``, or None for a full backup.

    The most recent backup is used unless it is ``candidate`` (the directory this
    run writes to), in which case the second most recent one is used.
    """
    candidate = os.path.normpath(candidate)
    for entry in catalog[:2]:
        if os.path.normpath(entry.path) != candidate:
            return entry.path
    return None


# -----------------------------------------------------------------------------
# Sync plan
# -----------------------------------------------------------------------------


class SyncPlan(NamedTuple):
    """Everything rsync needs to know about a single run."""

    source: str
    destination: str
    exclude_patterns: tuple[str, ...]
    delete_extraneous: bool
    link_dest: str | None
    log_file: str
    suppress_per_file_logging: bool
    rsync_flags: tuple[str, ...] = DEFAULT_RSYNC_FLAGS

    @property
    def incremental(self) -> bool:
        """Whether unchanged files are hard-linked from a previous backup."""
        return self.link_dest is not None


def default_excludes(source: str) -> tuple[str, ...]:
    """Return the cache and thumbnail excludes for every directory in ``source``.

    rsync anchors a leading ``/`` at the transfer root, which is the parent of
    ``source`` because it is passed without a trailing slash.
    """
    name = os.path.basename(source.rstrip("/"))
    base = f"/{name}" if name else ""
    return tuple(f"{base}/*/{d}/" for d in DEFAULT_EXCLUDE_DIRS)


def build_sync_plan(
    previous: str | None,
    backup_path: str,
    log_file: str,
    source: str,
    extra_excludes: Sequence[str] = (),
    rsync_flags: Sequence[str] = DEFAULT_RSYNC_FLAGS,
) -> SyncPlan:
    """Assemble the rsync configuration for a full or incremental backup."""
    return SyncPlan(
        source=source,
        destination=backup_path,
        exclude_patterns=(*default_excludes(source), *extra_excludes),
        delete_extraneous=True,
        link_dest=previous,
        log_file=log_file,
        # A full backup transfers every file, only keep the summary in the log
        suppress_per_file_logging=previous is None,
        rsync_flags=tuple(rsync_flags),
    )


def rsync_command(plan: SyncPlan) -> list[str]:
    """Return the rsync argv for the plan."""
    cmd = ["rsync", *plan.rsync_flags]
    if plan.delete_extraneous:
        cmd.append("--delete")
    cmd += [f"--exclude={pattern}" for pattern in plan.exclude_patterns]
    if plan.link_dest is not None:
        cmd.append(f"--link-dest={plan.link_dest}")
    cmd.append(f"--log-file={plan.log_file}")
    if plan.suppress_per_file_logging:
        # An empty format keeps transferred files out of the log
        cmd.append("--log-file-format=")
    cmd += [plan.source, plan.destination]
    return cmd


def describe_command(plan: SyncPlan) -> str:
    """Return the rsync command as it would be typed in a shell."""
    return shlex.join(rsync_command(plan))


def get_rsync_flags(
    rsync_set_flags: str | None,
    rsync_append_flags: str | None,
) -> tuple[str, ...]:
    """Get the rsync flags."""
    rsync_flags = list(DEFAULT_RSYNC_FLAGS)

    if rsync_set_flags:
        rsync_flags = rsync_set_flags.split()

    if rsync_append_flags:
        rsync_flags += rsync_append_flags.split()

    return tuple(rsync_flags)


# -----------------------------------------------------------------------------
# Run log
# -----------------------------------------------------------------------------


class RunLog:
    """Echo messages to the console and append them to the run log file."""

    def __init__(self, path: str) -> None:
        self.path = path

    def write(self, message: str) -> None:
        """Append a line to the log file only."""
        with open(self.path, "a", encoding="utf-8", errors="surrogateescape") as f:
            f.write(f"{message}\n")

    def tee(self, message: str) -> None:
        """Print a line and append it to the log file."""
        log_info(escape(message))
        self.write(message)


def format_lapse(seconds: float) -> str:
    """Return a duration as HH:MM:SS, hours are not wrapped at a day."""
    hours, rest = divmod(int(seconds), 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def log_run_start(run_log: RunLog, plan: SyncPlan, started: datetime) -> None:
    """Record where, how and when the backup starts."""
    run_log.tee(f"Backup starting at {started.strftime(TIME_FORMAT)}")
    run_log.tee(f"Backing up to {plan.destination}")
    run_log.tee(f"Log file is {plan.log_file}")
    if plan.incremental:
        run_log.tee("This is an incremental backup")
        run_log.tee(f"Previous backup used as link-dest: {plan.link_dest}")
    else:
        run_log.tee("No previous backup found, this is a full backup")
        run_log.tee("Limited rsync logging for full backup")
    run_log.tee(f"Command is: {describe_command(plan)}")


def log_run_end(run_log: RunLog, started: datetime, finished: datetime) -> None:
    """Record when the backup finished and how long it took."""
    lapse = format_lapse((finished - started).total_seconds())
    run_log.tee(f"Backup finished at {finished.strftime(TIME_FORMAT)} Lapse {lapse}")
    run_log.write(f"{SEPARATOR}\n")


def log_plan(plan: SyncPlan) -> None:
    """Show the plan on the console."""
    log_info(f"To:       {style(escape(plan.destination), bold=True)}")
    log_info(f"Log file: {style(escape(plan.log_file), bold=True)}")
    if plan.incremental:
        log_info(
            style(
                f"Previous backup found - doing incremental backup from {escape(str(plan.link_dest))}",
                "yellow",
            ),
        )
    else:
        log_info("No previous backup - doing a full backup.")
    log_info(style("Command:", bold=True))
    log_info(style(escape(describe_command(plan)), "green"))


# -----------------------------------------------------------------------------
# Running rsync
# -----------------------------------------------------------------------------


async def async_run_cmd(cmd: Sequence[str]) -> int:
    """Run a command attached to the terminal and return its exit status."""
    if VERBOSE:
        log_info(f"Running command: {style(escape(shlex.join(cmd)), 'green', bold=True)}")

    process = await asyncio.create_subprocess_exec(*cmd)
    returncode = await process.wait()

    if VERBOSE and returncode != 0:
        msg = style(str(returncode), "red", bold=True)
        log_error(f"Command exit code: {msg}")
    return returncode


def run_cmd(cmd: Sequence[str]) -> int:
    """Synchronously run a command."""
    return asyncio.run(async_run_cmd(cmd))


def invoke_sync(plan: SyncPlan) -> int:
    """Run rsync for the plan and return its exit status.

    rsync shares the terminal so its progress line can redraw itself in place.
    """
    try:
        return run_cmd(rsync_command(plan))
    except FileNotFoundError as e:
        raise CopyEngineError(127, "rsync not found - is it installed?") from e


# -----------------------------------------------------------------------------
# Backup
# -----------------------------------------------------------------------------


def ensure_directory(path: str, exit_code: int = 2) -> bool:
    """Create ``path`` and its parents, return whether it had to be created."""
    if os.path.isdir(path):
        return False
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise DirectoryCreationError(path, e.errno, exit_code) from e
    return True


def backup(
    root: str,
    *,
    host: str,
    source: str = DEFAULT_SOURCE,
    now: datetime | None = None,
    excludes: Sequence[str] = (),
    rsync_flags: Sequence[str] = DEFAULT_RSYNC_FLAGS,
    confirm: Callable[[SyncPlan], bool] | None = None,
    dry_run: bool = False,
) -> SyncPlan:
    """Back up ``source`` into today's directory below ``root``.

    The first backup of a quarter is a full copy; later ones hard-link unchanged
    files from the most recent earlier backup of the quarter. Running again on
    the same day re-syncs the existing directory of that day.
    """
    # Without a trailing slash rsync copies the folder itself, not its contents
    source = source.rstrip("/") if source != "/" else source
    if not os.path.exists(source):
        msg = f"Source folder '{source}' does not exist - aborting."
        raise ArgumentError(msg)

    paths = plan_paths(now or datetime.now(), host, os.path.abspath(root))

    created = False
    if dry_run:
        catalog = find_backups(paths.quarter_path)
    else:
        ensure_directory(paths.quarter_path, exit_code=2)
        created = ensure_directory(paths.backup_path, exit_code=3)
        catalog = find_backups(paths.quarter_path)

    previous = locate_previous_backup(catalog, paths.backup_path)
    plan = build_sync_plan(
        previous,
        paths.backup_path,
        paths.log_file,
        source,
        excludes,
        rsync_flags,
    )

    if dry_run:
        log_plan(plan)
        log_info(f"Dry-run mode enabled: {style('nothing was written', 'orange')}.")
        return plan

    if confirm is not None and not confirm(plan):
        if created:
            # Left behind, an empty directory would become tomorrow's link-dest
            os.rmdir(paths.backup_path)
        msg = "Backup cancelled."
        raise UserAbort(msg)

    run_log = RunLog(paths.log_file)
    started = datetime.now()
    log_run_start(run_log, plan, started)
    try:
        status = invoke_sync(plan)
        if status != 0:
            run_log.tee(f"rsync exited with status {status}")
        run_log.tee("Wait for sync...")
        os.sync()
    finally:
        log_run_end(run_log, started, datetime.now())

    if status != 0:
        raise CopyEngineError(status)
    log_info(style("Backup completed without errors.", "magenta"))
    return plan


# -----------------------------------------------------------------------------
# Command line
# -----------------------------------------------------------------------------


def host_identity() -> str:
    """Return the network name of this machine (``uname -n``)."""
    return os.uname().nodename


def check_privileges() -> None:
    """Raise if not running as root."""
    if os.geteuid() != ROOT_UID:
        msg = f"This script must be run with sudo. Usage: sudo {APPNAME} <destination-device>"
        raise PrivilegeError(msg)


def resolve_destination(destination: str, user: str | None = None) -> str:
    """Return the backup root for a directory path or a device name.

    A bare device name maps to its mount point ``/media/<user>/<device>``, even
    when the current directory happens to hold a directory of that name.
    """
    destination = destination.rstrip("/") if destination != "/" else destination
    if not destination:
        msg = "Expecting one command line argument."
        raise ArgumentError(msg)
    if os.sep in destination:
        return os.path.abspath(destination)
    user = user or os.environ.get("SUDO_USER") or getpass.getuser()
    return os.path.join(MEDIA_ROOT, user, destination)


def check_destination(root: str) -> None:
    """Raise if the backup root does not exist, i.e. the device is not mounted."""
    if not os.path.isdir(root):
        msg = f"Destination '{root}' does not exist - is the device mounted?"
        raise ArgumentError(msg)


def prompt_confirm(plan: SyncPlan) -> bool:
    """Show the plan and ask whether to go ahead; only an answer starting with n declines."""
    log_plan(plan)
    reply = input("Proceed with backup? [Y/n] ")
    return not reply.strip().lower().startswith("n")


class _ArgumentParser(argparse.ArgumentParser):
    """Report usage errors as `ArgumentError` so they exit like every other bad argument."""

    def error(self, message: str) -> NoReturn:
        msg = f"{message}. Usage: sudo {APPNAME} <destination-device>"
        raise ArgumentError(msg)


def parse_arguments(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments and return the parsed arguments."""
    parser = _ArgumentParser(
        prog=APPNAME,
        description="Back up a directory tree into <destination>/backup/<host>/<year>q<quarter>/<date>."
        " The first backup of a quarter is a full backup, the following ones hard-link"
        " unchanged files from the previous backup. Must be run with sudo.",
    )
    parser.add_argument(
        "destination",
        help="Destination directory, or the name of a device mounted under /media/$SUDO_USER.",
    )
    parser.add_argument(
        "--source",
        default=DEFAULT_SOURCE,
        help=f"Directory to back up. Default: {DEFAULT_SOURCE}",
    )
    parser.add_argument(
        "--exclude",
        action="append",
        default=[],
        metavar="PATTERN",
        help="Additional rsync exclude pattern, can be given multiple times."
        " Cache and thumbnail directories are always excluded.",
    )
    parser.add_argument(
        "--host",
        help="Host name used in the backup path. Default: the network name of this machine.",
    )
    parser.add_argument(
        "--rsync-get-flags",
        action="store_true",
        help="Display the default rsync flags that are used for backup.",
    )
    parser.add_argument(
        "--rsync-set-flags",
        help="Set the rsync flags that are going to be used for backup.",
    )
    parser.add_argument(
        "--rsync-append-flags",
        help="Append the rsync flags that are going to be used for backup.",
    )
    parser.add_argument(
        "-c",
        "--confirm",
        action="store_true",
        help="Show the backup plan and ask for confirmation before running rsync.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the backup plan without creating directories or running rsync.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> None:
    """Main function."""
    global VERBOSE
    signal.signal(signal.SIGINT, lambda n, f: terminate_script(n, f))
    try:
        try:
            args = parse_arguments(argv)
        except ArgumentError:
            # Without sudo that is the problem to report, whatever else is wrong
            if "--dry-run" not in (sys.argv[1:] if argv is None else argv):
                check_privileges()
            raise
        VERBOSE = args.verbose

        rsync_flags = get_rsync_flags(args.rsync_set_flags, args.rsync_append_flags)
        if args.rsync_get_flags:
            flags = " ".join(rsync_flags)
            log_info(f"Rsync flags:\n{style(escape(flags), 'yellow', bold=True)}")
            sys.exit(0)

        if not args.dry_run:
            check_privileges()
        root = resolve_destination(args.destination)
        check_destination(root)
        backup(
            root,
            host=args.host or host_identity(),
            source=args.source,
            excludes=args.exclude,
            rsync_flags=rsync_flags,
            confirm=prompt_confirm if args.confirm else None,
            dry_run=args.dry_run,
        )
    except BackupError as e:
        log_error(escape(str(e)))
        sys.exit(e.exit_code)


if __name__ == "__main__":
    main()
