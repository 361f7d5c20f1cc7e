"""File integrity monitor for the portal tree.

Usage:
    python -m portal.integrity --init     # record hashes of the monitored files
    python -m portal.integrity --check    # report modified, added and deleted files
    python -m portal.integrity --update   # re-record hashes after legitimate changes

Exits 1 from --check when anything changed, so it can run from cron:
    0 * * * * cd /srv/osint-portal && python -m portal.integrity --check
"""
from __future__ import annotations

import argparse
import hashlib
import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

HASH_FILE_NAME = ".file-hashes.json"
LOG_FILE_NAME = "integrity-log.txt"

MONITOR_EXTENSIONS = frozenset({".js", ".html", ".css", ".json", ".py"})
EXCLUDE = (
    "visitor-data.json",
    "users.db",
    HASH_FILE_NAME,
    LOG_FILE_NAME,
    "node_modules",
    ".git",
    "__pycache__",
    ".venv",
)


@dataclass
class IntegrityReport:
    monitored: int = 0
    modified: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.modified or self.added or self.deleted)


def file_hash(path: Path) -> str | None:
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except OSError:
        return None


class IntegrityChecker:
    def __init__(self, base_dir: str | Path, hash_file: str | Path | None = None,
                 log_file: str | Path | None = None) -> None:
        self.base_dir = Path(base_dir)
        self.hash_file = Path(hash_file) if hash_file else self.base_dir / "security" / HASH_FILE_NAME
        self.log_file = Path(log_file) if log_file else self.base_dir / "security" / LOG_FILE_NAME

    def log(self, message: str, alert: bool = False) -> None:
        """Emit through logging and append a timestamped line to the log file."""
        if alert:
            logger.warning(message)
        else:
            logger.info(message)
        ts = datetime.now(timezone.utc).isoformat(timespec="seconds")
        try:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            with self.log_file.open("a", encoding="utf-8") as f:
                f.write(f"[{ts}] {'ALERT: ' if alert else ''}{message}\n")
        except OSError:
            logger.exception("Failed to write integrity log to %s", self.log_file)

    def monitored_files(self) -> list[str]:
        files = []
        for p in sorted(self.base_dir.rglob("*")):
            rel = p.relative_to(self.base_dir).as_posix()
            if any(ex in rel for ex in EXCLUDE):
                continue
            if p.is_file() and p.suffix.lower() in MONITOR_EXTENSIONS:
                files.append(rel)
        return files

    def snapshot(self) -> dict[str, dict]:
        hashes = {}
        for rel in self.monitored_files():
            p = self.base_dir / rel
            digest = file_hash(p)
            if digest is None:
                continue
            st = p.stat()
            hashes[rel] = {
                "hash": digest,
                "size": st.st_size,
                "modified": datetime.fromtimestamp(st.st_mtime, timezone.utc).isoformat(),
            }
        return hashes

    def init(self) -> int:
        self.log("Initializing file integrity hashes...")
        hashes = self.snapshot()
        self.hash_file.parent.mkdir(parents=True, exist_ok=True)
        self.hash_file.write_text(json.dumps(hashes, indent=2), encoding="utf-8")
        self.log(f"Initialized hashes for {len(hashes)} files.")
        return len(hashes)

    def update(self) -> int:
        self.log("Updating file integrity hashes...")
        n = self.init()
        self.log("Hashes updated successfully.")
        return n

    def check(self) -> IntegrityReport:
        """Compare the tree against the stored hashes.

        Raises FileNotFoundError if --init was never run.
        """
        self.log("Starting file integrity check...")
        if not self.hash_file.exists():
            self.log("Hash file not found. Run with --init first.", alert=True)
            raise FileNotFoundError(self.hash_file)
        stored = json.loads(self.hash_file.read_text(encoding="utf-8"))
        report = IntegrityReport(monitored=len(stored))

        for rel, data in stored.items():
            p = self.base_dir / rel
            if not p.exists():
                report.deleted.append(rel)
                self.log(f"File DELETED: {rel}", alert=True)
                continue
            current = file_hash(p)
            if current != data.get("hash"):
                report.modified.append(rel)
                self.log(f"File MODIFIED: {rel}", alert=True)
                self.log(f"  Old hash: {data.get('hash')}")
                self.log(f"  New hash: {current}")

        for rel in self.monitored_files():
            if rel not in stored:
                report.added.append(rel)
                self.log(f"New file ADDED: {rel}", alert=True)

        if report.ok:
            self.log("All files intact. No unauthorized modifications detected.")
        else:
            self.log("File integrity check FAILED! Unauthorized changes detected.", alert=True)
        return report


def _print_summary(report: IntegrityReport) -> None:
    print("\n========== INTEGRITY CHECK SUMMARY ==========")
    print(f"Total files monitored: {report.monitored}")
    print(f"Modified files: {len(report.modified)}")
    print(f"New files: {len(report.added)}")
    print(f"Deleted files: {len(report.deleted)}")
    for title, names in (("Modified", report.modified), ("New", report.added), ("Deleted", report.deleted)):
        if names:
            print(f"\n{title} files:")
            for name in names:
                print(f"  - {name}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="portal-integrity",
        description="Detect unauthorized changes to the portal's files.",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--init", action="store_true", help="generate initial file hashes")
    mode.add_argument("--check", action="store_true", help="check for unauthorized modifications")
    mode.add_argument("--update", action="store_true", help="update hashes after legitimate changes")
    parser.add_argument("--base", default=".", help="directory to monitor (default: current directory)")
    parser.add_argument("--hash-file", default=None, help=f"hash store (default: <base>/security/{HASH_FILE_NAME})")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    checker = IntegrityChecker(args.base, hash_file=args.hash_file)

    if args.init:
        checker.init()
        print(f"Hash file saved to: {checker.hash_file}")
        return 0
    if args.update:
        checker.update()
        return 0
    if args.check:
        try:
            report = checker.check()
        except FileNotFoundError:
            return 1
        _print_summary(report)
        return 0 if report.ok else 1

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
