#!/usr/bin/env python3

"""
Attribute Linux inotify(7) watch usage to the processes holding it.

The kernel caps the number of inotify watches per user
(fs.inotify.max_user_watches). Once the cap is hit, this script answers
"which process, owned by which user, holds how many watches" using only
what procfs already exposes: every anon_inode:inotify descriptor of every
process is located and the "inotify wd:" lines of its fdinfo record are
counted. Mount points are listed alongside with their device/inode identity
so that the sdev/ino fields of a watch can be matched by hand.

Operational properties:

  - This script may be invoked as an unprivileged user; in this case, only
    processes owned by that unprivileged user can be inspected. Everything
    else is skipped silently (use -v to see what was skipped).

  - No rows are reported for processes that hold no inotify watches.

  - The process table changes while it is being read. A process or
    descriptor that disappears mid-scan is skipped unless --strict is given.
"""

import argparse
import concurrent.futures
import enum
import itertools
import logging
import os
import re
import sys
import time
from typing import NamedTuple, Tuple

from prometheus_client import CollectorRegistry, Gauge, generate_latest

_NotifyTarget = "anon_inode:inotify"
_Proc = "/proc"
_Mounts = "/proc/mounts"
_StatusFile = "status"
_CommFile = "comm"
_CmdlineFile = "cmdline"
_DescriptorDir = "fd"
_DescriptorInfoDir = "fdinfo"
_ReadLimit = 4096

_RowFormat = "%-10s %-10s %-10s %-40s %s"
_DecimalRun = re.compile(r"[0-9]+")
_MountEscape = re.compile(r"\\([0-7]{3})")

log = logging.getLogger(__name__)


class Error(Exception):
    pass


class FatalScanError(Error):
    """A data source the whole scan depends on is unavailable."""


class EntityError(Error):
    """A single process, descriptor or mount could not be inspected."""

    def __init__(self, path, cause):
        super().__init__(f"{path}: {cause}")
        self.path = path
        self.cause = cause


class _PIDGoneError(Error):
    pass


class FaultPolicy(enum.Enum):
    STRICT = "strict"
    BEST_EFFORT = "best-effort"


class Consumer(NamedTuple):
    pid: str
    ruid: str
    watch_count: int


class MountEntry(NamedTuple):
    path: str
    device_id: int = 0
    inode_number: int = 0


class InotifyWatch(NamedTuple):
    wd: int
    ino: int
    sdev: int
    mask: int
    ignored_mask: int


class ScanResult(NamedTuple):
    consumers: Tuple[Consumer, ...]
    complete: bool


class ReportRow(NamedTuple):
    consumer: Consumer
    comm: str
    cmdline: str


def _tolerate(policy, path, err):
    if policy is FaultPolicy.STRICT:
        raise EntityError(path, err) from err
    log.debug("skipping %s: %s", path, err)


def read_text(path, limit=_ReadLimit):
    """Read at most limit bytes of a small pseudo-file in a single call.

    A limit of None reads the whole record. OSError is left to the caller.
    """
    with open(path, mode="rb") as f:
        data = f.read(-1 if limit is None else limit)
    return data.decode(errors="surrogateescape")


def read_text_or_empty(path, limit=_ReadLimit):
    try:
        return read_text(path, limit)
    except OSError as e:
        log.debug("cannot read %s: %s", path, e)
        return ""


def parse_status_uid(text):
    """Extract the real uid from a /proc/<pid>/status record.

    The record holds "Key:\\tvalue" lines; the Uid line lists the real,
    effective, saved and filesystem uids in that order. Returns "" when no
    Uid line is present.
    """
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if not sep or key.strip() != "Uid":
            continue
        m = _DecimalRun.search(value)
        return m.group(0) if m else ""
    return ""


def _hex_field(fields, name):
    try:
        return int(fields.get(name, "0"), 16)
    except ValueError:
        return 0


def parse_fdinfo_watches(text):
    """Parse the watch lines of an inotify descriptor's fdinfo record.

    Sample record:

        pos:    0
        flags:  00
        mnt_id: 15
        ino:    1057
        inotify wd:2 ino:a3f sdev:800001 mask:fc6 ignored_mask:0 fhandle-bytes:8 ...
        inotify wd:1 ino:2 sdev:800001 mask:fc6 ignored_mask:0 fhandle-bytes:8 ...

    Only lines led by the "inotify wd:" tokens are watches. The numeric
    fields are hexadecimal; an unparsable field reads as 0 without dropping
    the watch.
    """
    watches = []
    for line in text.splitlines():
        tokens = line.split()
        if len(tokens) < 2 or tokens[0] != "inotify" or not tokens[1].startswith("wd:"):
            continue
        fields = dict(t.partition(":")[::2] for t in tokens[1:])
        watches.append(
            InotifyWatch(
                wd=_hex_field(fields, "wd"),
                ino=_hex_field(fields, "ino"),
                sdev=_hex_field(fields, "sdev"),
                mask=_hex_field(fields, "mask"),
                ignored_mask=_hex_field(fields, "ignored_mask"),
            )
        )
    return watches


def parse_mount_line(line):
    """Return the mount path of a mount table line, or None.

    The kernel escapes blanks and backslashes in paths as octal (\\040 for a
    space); those are decoded.
    """
    fields = line.split(None, 2)
    if len(fields) < 2:
        return None
    return _MountEscape.sub(lambda m: chr(int(m.group(1), 8)), fields[1])


def resolve_uid(pid, proc=_Proc):
    """Real uid of pid as a string; "" means unknown, not root."""
    status = os.path.join(proc, str(pid), _StatusFile)
    try:
        return parse_status_uid(read_text(status, limit=None))
    except OSError as e:
        log.debug("cannot resolve uid from %s: %s", status, e)
        return ""


def inspect(pid, proc=_Proc, policy=FaultPolicy.BEST_EFFORT):
    """Count the inotify watches held by pid.

    Args:
        pid: process id, as listed under proc.
        proc: procfs mount point.
        policy: FaultPolicy for per-descriptor failures.

    Returns:
        (watch_count, ruid) summed across all inotify instances of pid.

    Raises:
        _PIDGoneError: the descriptor directory cannot be listed.
        EntityError: under FaultPolicy.STRICT, on any per-pid failure.
    """
    pid = str(pid)
    descriptors = os.path.join(proc, pid, _DescriptorDir)
    try:
        fds = os.listdir(descriptors)
    except OSError as e:
        if policy is FaultPolicy.STRICT:
            raise EntityError(descriptors, e) from e
        raise _PIDGoneError(descriptors) from e

    ruid = resolve_uid(pid, proc)
    watch_count = 0
    for fd in fds:
        link = os.path.join(descriptors, fd)
        try:
            target = os.readlink(link)
        except OSError as e:
            # Closed between listdir() and readlink().
            _tolerate(policy, link, e)
            continue
        if target != _NotifyTarget:
            continue

        info = os.path.join(proc, pid, _DescriptorInfoDir, fd)
        try:
            watch_count += len(parse_fdinfo_watches(read_text(info, limit=None)))
        except OSError as e:
            _tolerate(policy, info, e)
    return watch_count, ruid


def _pids(proc=_Proc):
    try:
        with os.scandir(proc) as it:
            entries = list(it)
    except OSError as e:
        raise FatalScanError(f"cannot enumerate processes in {proc}: {e}") from e

    pids = []
    for entry in entries:
        if not entry.name.isdigit():
            continue
        try:
            if not entry.is_dir():
                continue
            pids.append(int(entry.name))
        except (OSError, ValueError):
            continue
    return sorted(pids)


def _inspect_consumer(pid, proc, policy):
    try:
        watch_count, ruid = inspect(pid, proc, policy)
    except _PIDGoneError as e:
        log.debug("skipping pid %s: %s", pid, e.__cause__)
        return None
    if watch_count <= 0:
        return None
    return Consumer(str(pid), ruid, watch_count)


def _scan_sequential(pids, proc, policy, expires):
    consumers = []
    for pid in pids:
        if expires is not None and time.monotonic() >= expires:
            return consumers, False
        consumer = _inspect_consumer(pid, proc, policy)
        if consumer is not None:
            consumers.append(consumer)
    return consumers, True


def _scan_parallel(pids, proc, policy, workers, expires):
    # Only this thread appends to consumers; map() yields in pid order.
    timeout = None if expires is None else max(expires - time.monotonic(), 0)
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=workers)
    consumers = []
    try:
        results = executor.map(
            _inspect_consumer,
            pids,
            itertools.repeat(proc),
            itertools.repeat(policy),
            timeout=timeout,
        )
        for consumer in results:
            if consumer is not None:
                consumers.append(consumer)
    except concurrent.futures.TimeoutError:
        return consumers, False
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
    return consumers, True


def scan(proc=_Proc, policy=FaultPolicy.BEST_EFFORT, workers=1, deadline=None, self_pid=None):
    """Attribute inotify watches to every process under proc.

    Processes are visited in ascending numeric pid order (2 before 10),
    which is the order procfs lists them in, rather than sorted by name.
    Consumers keep that order even when workers > 1. Once deadline seconds have elapsed no
    further pids are inspected and the partial result is returned with
    complete=False.
    """
    if self_pid is None:
        self_pid = os.getpid()
    pids = [p for p in _pids(proc) if p != self_pid]
    expires = None if deadline is None else time.monotonic() + deadline

    if workers > 1:
        consumers, complete = _scan_parallel(pids, proc, policy, workers, expires)
    else:
        consumers, complete = _scan_sequential(pids, proc, policy, expires)

    if not complete:
        log.warning(
            "scan deadline of %ss expired, reporting %d consumers from a partial scan",
            deadline,
            len(consumers),
        )
    return ScanResult(tuple(consumers), complete)


def enumerate_mounts(mounts=_Mounts, policy=FaultPolicy.BEST_EFFORT):
    """List the absolute mount points of the mount table with their identity.

    A mount point that cannot be stat'ed is kept with a zero device and
    inode under FaultPolicy.BEST_EFFORT.
    """
    try:
        with open(mounts, errors="surrogateescape") as f:
            lines = f.readlines()
    except OSError as e:
        raise FatalScanError(f"cannot open mount table {mounts}: {e}") from e

    entries = []
    for line in lines:
        path = parse_mount_line(line)
        if path is None or not path.startswith("/"):
            continue
        try:
            st = os.lstat(path)
        except (OSError, ValueError) as e:
            # ValueError: a decoded \000 left a NUL in the path.
            _tolerate(policy, path, e)
            entries.append(MountEntry(path))
            continue
        entries.append(MountEntry(path, st.st_dev, st.st_ino))
    return entries


def _pid_comm(pid, proc=_Proc):
    return read_text_or_empty(os.path.join(proc, pid, _CommFile)).rstrip("\n")


def _pid_cmdline(pid, proc=_Proc):
    # Arguments are NUL separated; kernel threads and zombies have none.
    cmdline = read_text_or_empty(os.path.join(proc, pid, _CmdlineFile))
    return cmdline.rstrip("\0").replace("\0", " ")


def report_rows(consumers, proc=_Proc, command=None, users=None):
    """Attach comm and cmdline to each consumer and apply the filters."""
    uids = {str(u) for u in users} if users else None
    rows = []
    for consumer in consumers:
        if uids is not None and consumer.ruid not in uids:
            continue
        comm = _pid_comm(consumer.pid, proc)
        if command is not None and not command.match(comm):
            continue
        rows.append(ReportRow(consumer, comm, _pid_cmdline(consumer.pid, proc)))
    return rows


def render_table(rows, mounts=None, total=False):
    lines = [_RowFormat % ("COUNT", "PID", "UID", "COMM", "CMDLINE")]
    for row in rows:
        c = row.consumer
        lines.append(_RowFormat % (c.watch_count, c.pid, c.ruid, row.comm, row.cmdline))
    if total:
        lines.append(
            "Total inotify watches: %d" % sum(row.consumer.watch_count for row in rows)
        )
    for entry in mounts or ():
        lines.append(f"{entry.path}\tDev:{entry.device_id}\tIno:{entry.inode_number}")
    return "\n".join(lines) + "\n"


def render_metrics(rows, mounts=None, user_summary=False):
    registry = CollectorRegistry()
    namespace = "inotify"

    if user_summary:
        g = Gauge(
            "user_watches",
            "Total number of inotify watches held by a user.",
            ["uid"],
            namespace=namespace,
            registry=registry,
        )
        for row in rows:
            g.labels(row.consumer.ruid).inc(row.consumer.watch_count)
    else:
        g = Gauge(
            "watches",
            "Total number of inotify watches held by a process.",
            ["pid", "uid", "command"],
            namespace=namespace,
            registry=registry,
        )
        for row in rows:
            g.labels(row.consumer.pid, row.consumer.ruid, row.comm).set(
                row.consumer.watch_count
            )

    if mounts is not None:
        m = Gauge(
            "mount_info",
            "Device and inode identity of a mount point.",
            ["path", "device", "inode"],
            namespace=namespace,
            registry=registry,
        )
        for entry in mounts:
            m.labels(entry.path, entry.device_id, entry.inode_number).set(1)

    return generate_latest(registry).decode()


def _regex(value):
    try:
        return re.compile(value)
    except re.error as err:
        raise argparse.ArgumentTypeError(f"invalid regular expression {value!r}: {err}")


def _positive_int(value):
    n = int(value)
    if n < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1: {value}")
    return n


def _positive_float(value):
    n = float(value)
    if n <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {value}")
    return n


def main(argv=[__name__]):
    parser = argparse.ArgumentParser(
        prog=os.path.basename(argv[0]),
        exit_on_error=False,
        description="List the processes holding inotify watches and the mount points they may watch.",
    )
    parser.add_argument(
        "--proc",
        default=_Proc,
        metavar="PATH",
        help="procfs mount point (default: %(default)s)",
    )
    parser.add_argument(
        "--mounts",
        default=_Mounts,
        metavar="PATH",
        help="mount table to enumerate (default: %(default)s)",
    )
    parser.add_argument(
        "--no-mounts",
        action="store_true",
        dest="no_mounts",
        help="Do not enumerate the mount table",
    )
    parser.add_argument(
        "-f",
        "--format",
        choices=("table", "prometheus"),
        default="table",
        help="Output format (default: %(default)s)",
    )
    parser.add_argument(
        "-c",
        "--command",
        type=_regex,
        dest="command",
        metavar="REGEX",
        help="Only report processes whose comm matches REGEX",
    )
    parser.add_argument(
        "-u",
        "--user",
        action="append",
        type=int,
        dest="users",
        metavar="UID",
        help="Only report processes running as UID (repeatable)",
    )
    parser.add_argument(
        "-U",
        "--user-summary",
        action="store_true",
        dest="user_summary",
        help="Sum watches per user instead of per process (prometheus format)",
    )
    parser.add_argument(
        "--total",
        action="store_true",
        help="Print the total watch count after the table",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Abort on the first process, descriptor or mount that cannot be inspected",
    )
    parser.add_argument(
        "-j",
        "--workers",
        type=_positive_int,
        default=1,
        metavar="N",
        help="Inspect processes with N threads (default: %(default)s)",
    )
    parser.add_argument(
        "--deadline",
        type=_positive_float,
        metavar="SECONDS",
        help="Stop collecting after SECONDS and report what was gathered; with "
        "--workers, inspections already running finish before the process exits",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log skipped processes, descriptors and mounts to stderr",
    )

    try:
        args = parser.parse_args(argv[1:])
    except argparse.ArgumentError as err:
        print(err, file=sys.stderr)
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )
    policy = FaultPolicy.STRICT if args.strict else FaultPolicy.BEST_EFFORT

    try:
        result = scan(args.proc, policy, args.workers, args.deadline)
        mounts = None if args.no_mounts else enumerate_mounts(args.mounts, policy)
    except Error as err:
        print(f"ERROR: {err}", file=sys.stderr)
        return 1

    rows = report_rows(result.consumers, args.proc, args.command, args.users)
    if args.format == "prometheus":
        print(render_metrics(rows, mounts, args.user_summary), end="")
    else:
        print(render_table(rows, mounts, args.total), end="")
    return 0


def cli():
    sys.exit(main(sys.argv))


if __name__ == "__main__":
    cli()
