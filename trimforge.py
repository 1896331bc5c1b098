#!/usr/bin/env python3
"""
TrimForge

A cross-platform Python script to strip trailing whitespace and trailing
blank lines from text files, leaving each file with exactly one final newline.
"""

import argparse
import concurrent.futures
import fnmatch
import io
import logging
import os
import queue
import shutil
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field
from typing import (
    BinaryIO,
    Callable,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
)

import pathspec
from tqdm import tqdm

# Define version
__version__ = "1.0.0"

DEFAULT_PATTERNS: List[str] = [
    "*.go",
    "*.js",
    "*.ts",
    "*.jsx",
    "*.tsx",
    "*.py",
    "*.rb",
    "*.rs",
    "*.toml",
    "*.yml",
    "*.yaml",
    "*.json",
    "*.xml",
    "*.html",
    "*.css",
    "*.scss",
    "*.md",
    "*.txt",
    "*.conf",
    "*.ini",
    "*.sh",
    "*.tf",
    "Dockerfile.*",
]
DEFAULT_WORKERS = 30
TEMP_PREFIX = "trimforge_"
TEMP_SUFFIX = ".tmp"
VCS_DIRS = {".git"}

# Set up logging with thread-safe handler
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()],
)
logger = logging.getLogger("TrimForge")
# Add a thread lock for logging
log_lock = threading.Lock()


class TrimForgeError(Exception):
    """Base class for failures tied to a single path."""

    def __init__(self, path: str, cause: Optional[BaseException] = None) -> None:
        self.path = path
        self.cause = cause
        message = f"{self.describe()}: {path}"
        if cause is not None:
            message = f"{message} ({cause})"
        super().__init__(message)

    def describe(self) -> str:
        return "error"


class WalkError(TrimForgeError):
    """Directory enumeration failed; aborts the whole walk."""

    def describe(self) -> str:
        return "cannot walk directory"


class OpenError(TrimForgeError):
    def describe(self) -> str:
        return "cannot open file"


class TempCreateError(TrimForgeError):
    def describe(self) -> str:
        return "cannot create temporary file next to"


class StreamError(TrimForgeError):
    def describe(self) -> str:
        return "read/write failed while normalizing"


class ReplaceError(TrimForgeError):
    def describe(self) -> str:
        return "cannot replace file contents of"


@dataclass(frozen=True)
class ProcessingResult:
    """Outcome of normalizing one file.

    ``changed`` is only ever True when the file on disk was rewritten.
    """

    path: str
    changed: bool = False
    error: Optional[Exception] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class RunStats:
    files_processed: int = 0
    files_changed: int = 0
    files_failed: int = 0
    start_time: float = field(default_factory=time.time)

    def elapsed(self) -> float:
        return time.time() - self.start_time

    def summary(self) -> str:
        return (
            f"Processed {self.files_processed} files, "
            f"changed {self.files_changed} files in {format_duration(self.elapsed())}."
        )


def format_duration(execution_time: float) -> str:
    """Format a duration in seconds for the run summary."""
    if execution_time < 60:
        return f"{execution_time:.2f} seconds"
    if execution_time < 3600:
        minutes = int(execution_time // 60)
        seconds = execution_time % 60
        return f"{minutes} minute{'s' if minutes != 1 else ''} {seconds:.2f} seconds"
    hours = int(execution_time // 3600)
    minutes = int((execution_time % 3600) // 60)
    seconds = execution_time % 60
    return (
        f"{hours} hour{'s' if hours != 1 else ''} "
        f"{minutes} minute{'s' if minutes != 1 else ''} "
        f"{seconds:.2f} seconds"
    )


def normalize_stream(source: BinaryIO, target: BinaryIO) -> bool:
    """
    Copy ``source`` to ``target`` in canonical form, one line at a time.

    Trailing spaces and tabs are stripped from every line, blank lines before
    the first and after the last content line are dropped, interior blank
    runs are kept as they are, and non-empty output ends with a single
    newline. Returns True if the output differs from the input.
    """
    changed = False
    pending_blanks = 0
    has_content = False
    ends_with_newline = False

    for raw_line in source:
        ends_with_newline = raw_line.endswith(b"\n")
        line = raw_line[:-1] if ends_with_newline else raw_line
        stripped = line.rstrip(b" \t")
        if stripped != line:
            changed = True

        if not stripped:
            pending_blanks += 1
            continue

        if has_content:
            # Terminate the previous content line, then replay the blank run.
            target.write(b"\n" * (pending_blanks + 1))
        elif pending_blanks:
            # Leading blank lines are dropped.
            changed = True
        pending_blanks = 0
        has_content = True
        target.write(stripped)

    if pending_blanks:
        changed = True

    if has_content:
        if not ends_with_newline:
            changed = True
        target.write(b"\n")

    return changed


def normalize_bytes(data: bytes) -> Tuple[bytes, bool]:
    """In-memory variant of normalize_stream()."""
    output = io.BytesIO()
    changed = normalize_stream(io.BytesIO(data), output)
    return output.getvalue(), changed


def _discard_temp(temp_path: str) -> None:
    try:
        os.remove(temp_path)
    except FileNotFoundError:
        # Already renamed onto the target.
        pass
    except OSError as e:
        with log_lock:
            logger.warning("Could not remove temporary file %s: %s", temp_path, str(e))


def _replace(temp_path: str, file_path: str) -> None:
    """Move the finished temporary file onto file_path."""
    try:
        shutil.copymode(file_path, temp_path)
    except OSError as e:
        raise ReplaceError(file_path, e) from e

    try:
        os.replace(temp_path, file_path)
        return
    except OSError as e:
        with log_lock:
            logger.debug(
                "Rename failed for %s (%s), falling back to copy", file_path, str(e)
            )

    # Copying writes over file_path in place, so keep a backup to restore from.
    backup_path = temp_path[: -len(TEMP_SUFFIX)] + ".bak" + TEMP_SUFFIX
    try:
        shutil.copy2(file_path, backup_path)
    except OSError as e:
        _discard_temp(backup_path)
        raise ReplaceError(file_path, e) from e

    try:
        shutil.copyfile(temp_path, file_path)
    except OSError as e:
        try:
            shutil.copy2(backup_path, file_path)
        except OSError as restore_err:
            with log_lock:
                logger.error(
                    "Failed to restore %s, original contents kept in %s: %s",
                    file_path,
                    backup_path,
                    str(restore_err),
                )
            raise ReplaceError(file_path, e) from e
        _discard_temp(backup_path)
        raise ReplaceError(file_path, e) from e
    _discard_temp(backup_path)


def _rewrite(file_path: str) -> bool:
    try:
        source = open(file_path, "rb")  # pylint: disable=consider-using-with
    except OSError as e:
        raise OpenError(file_path, e) from e

    with source:
        directory = os.path.dirname(file_path) or os.curdir
        try:
            fd, temp_path = tempfile.mkstemp(
                prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX, dir=directory
            )
        except OSError as e:
            raise TempCreateError(file_path, e) from e

        try:
            try:
                try:
                    target = os.fdopen(fd, "wb")
                except Exception:
                    os.close(fd)
                    raise
                with target:
                    changed = normalize_stream(source, target)
                    if changed:
                        target.flush()
                        os.fsync(target.fileno())
            except OSError as e:
                raise StreamError(file_path, e) from e

            if not changed:
                return False

            # Some platforms refuse to rename over a file that is still open.
            source.close()
            _replace(temp_path, file_path)
            return True
        finally:
            _discard_temp(temp_path)


def rewrite_file(file_path: str) -> ProcessingResult:
    """Rewrite a file in canonical form if it is not canonical already."""
    try:
        changed = _rewrite(file_path)
    except TrimForgeError as e:
        return ProcessingResult(file_path, changed=False, error=e)

    with log_lock:
        if changed:
            logger.debug("Updated file: %s", file_path)
        else:
            logger.debug("No changes needed for file: %s", file_path)
    return ProcessingResult(file_path, changed=changed)


def parse_patterns(value: Optional[str]) -> List[str]:
    """Split a comma-separated pattern list; bare extensions become globs."""
    if not value:
        return list(DEFAULT_PATTERNS)

    patterns: List[str] = []
    for pattern in value.split(","):
        pattern = pattern.strip()
        if not pattern:  # Skip empty patterns
            continue

        # Check if pattern is just an extension
        if pattern.startswith(".") and "/" not in pattern and "\\" not in pattern:
            pattern = f"*{pattern}"
        patterns.append(pattern)

    return patterns or list(DEFAULT_PATTERNS)


def _never_ignored(_path: str) -> bool:
    return False


def load_ignore_predicate(root_dir: str) -> Callable[[str], bool]:
    """Build an "is this relative path ignored?" check from root_dir/.gitignore."""
    gitignore_path = os.path.join(root_dir, ".gitignore")
    if not os.path.isfile(gitignore_path):
        return _never_ignored

    try:
        with open(gitignore_path, "r", encoding="utf-8") as f:
            spec = pathspec.PathSpec.from_lines("gitwildmatch", f)
    except (OSError, UnicodeDecodeError, ValueError) as e:
        logger.warning("Ignoring unusable %s: %s", gitignore_path, str(e))
        return _never_ignored

    return spec.match_file


def _is_temp_artifact(name: str) -> bool:
    return name.startswith(TEMP_PREFIX) and name.endswith(TEMP_SUFFIX)


def find_files(
    target: str,
    patterns: Sequence[str],
    is_ignored: Optional[Callable[[str], bool]] = None,
    matcher: Callable[[str, str], bool] = fnmatch.fnmatchcase,
    cancelled: Optional[threading.Event] = None,
) -> Iterator[str]:
    """
    Yield files under target whose name matches one of patterns.

    A target that is a file is yielded as is. Paths handed to is_ignored are
    relative to target and use "/" separators; passing None disables ignore
    checks. The walk stops quietly once cancelled is set. Raises WalkError if
    the tree cannot be enumerated.
    """
    if os.path.isfile(target):
        yield target
        return

    def on_error(err: OSError) -> None:
        raise WalkError(err.filename or target, err) from err

    for root, dirs, files in os.walk(target, onerror=on_error):
        if cancelled is not None and cancelled.is_set():
            return
        rel_root = os.path.relpath(root, target)
        rel_root = "" if rel_root == os.curdir else rel_root.replace(os.sep, "/") + "/"

        kept_dirs = []
        for d in sorted(dirs):
            if d in VCS_DIRS:
                continue
            if is_ignored is not None and is_ignored(f"{rel_root}{d}/"):
                with log_lock:
                    logger.debug("Skipping ignored directory: %s", os.path.join(root, d))
                continue
            kept_dirs.append(d)
        dirs[:] = kept_dirs

        for filename in sorted(files):
            if cancelled is not None and cancelled.is_set():
                return
            if _is_temp_artifact(filename):
                continue
            file_path = os.path.join(root, filename)
            if is_ignored is not None and is_ignored(rel_root + filename):
                with log_lock:
                    logger.debug("Skipping ignored file: %s", file_path)
                continue
            if any(matcher(filename, pattern) for pattern in patterns):
                with log_lock:
                    logger.debug("Processing: %s", file_path)
                yield file_path


# Marks the end of the job and result queues.
_DONE = object()


class WorkerPool:
    """
    A fixed number of worker threads rewriting candidate paths.

    A producer thread feeds candidates through a bounded queue, so a fast
    walk waits for the workers instead of buffering the whole tree. Results
    come back through an unbounded queue that a supervisor closes once every
    worker has exited.
    """

    def __init__(
        self,
        workers: int,
        rewrite: Optional[Callable[[str], ProcessingResult]] = None,
        backlog: Optional[int] = None,
        cancelled: Optional[threading.Event] = None,
    ) -> None:
        if workers < 1:
            raise ValueError(f"workers must be at least 1, got {workers}")
        self.workers = workers
        self.rewrite = rewrite or rewrite_file
        self.backlog = backlog or workers * 2
        self.walk_error: Optional[WalkError] = None
        self._cancelled = cancelled if cancelled is not None else threading.Event()
        self._jobs: "queue.Queue[object]" = queue.Queue(maxsize=self.backlog)
        self._results: "queue.Queue[object]" = queue.Queue()

    def cancel(self) -> None:
        """Stop dispatching new work; in-flight rewrites still complete."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _produce(self, candidates: Iterable[str]) -> None:
        try:
            for path in candidates:
                if self._cancelled.is_set():
                    break
                self._jobs.put(path)
        except WalkError as e:
            self.walk_error = e
            with log_lock:
                logger.debug("Walk aborted: %s", str(e))
        except Exception as e:  # pylint: disable=broad-exception-caught
            # A failing ignore or match predicate aborts the walk like an OSError.
            self.walk_error = WalkError("<walk>", e)
            with log_lock:
                logger.debug("Walk aborted: %s", str(e))
        finally:
            for _ in range(self.workers):
                self._jobs.put(_DONE)

    def _work(self) -> None:
        while True:
            path = self._jobs.get()
            if path is _DONE:
                return
            if self._cancelled.is_set():
                continue
            try:
                result = self.rewrite(path)  # type: ignore[arg-type]
            except Exception as e:  # pylint: disable=broad-exception-caught
                result = ProcessingResult(str(path), error=e)
            self._results.put(result)

    def _supervise(self, futures: List["concurrent.futures.Future[None]"]) -> None:
        concurrent.futures.wait(futures)
        self._results.put(_DONE)

    def run(self, candidates: Iterable[str]) -> Iterator[ProcessingResult]:
        """Rewrite every candidate, yielding results in completion order."""
        with log_lock:
            logger.debug("Using %d worker threads", self.workers)

        producer = threading.Thread(
            target=self._produce, args=(candidates,), name="trimforge-walk", daemon=True
        )
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="trimforge-worker"
        ) as executor:
            futures = [executor.submit(self._work) for _ in range(self.workers)]
            supervisor = threading.Thread(
                target=self._supervise, args=(futures,), daemon=True
            )
            producer.start()
            supervisor.start()
            try:
                while True:
                    item = self._results.get()
                    if item is _DONE:
                        break
                    yield item  # type: ignore[misc]
            finally:
                # Leaving early (consumer closed or interrupted) cancels the run.
                self._cancelled.set()
                producer.join()
                supervisor.join()


def process_files_parallel(
    candidates: Iterable[str],
    max_workers: int = DEFAULT_WORKERS,
    show_progress: Optional[bool] = None,
    cancelled: Optional[threading.Event] = None,
) -> Tuple[RunStats, Optional[WalkError]]:
    """Process candidates in parallel and tally the results."""
    stats = RunStats()
    pool = WorkerPool(max_workers, cancelled=cancelled)

    with tqdm(
        desc="Processing files",
        unit="file",
        disable=None if show_progress is None else not show_progress,
    ) as pbar:
        for result in pool.run(candidates):
            stats.files_processed += 1
            if result.failed:
                stats.files_failed += 1
                with log_lock:
                    logger.error("Error processing file %s: %s", result.path, result.error)
            elif result.changed:
                stats.files_changed += 1
                with log_lock:
                    logger.debug("Changed: %s", result.path)
            pbar.update(1)

    if stats.files_failed > 0:
        with log_lock:
            logger.warning(
                "Encountered errors while processing %d files", stats.files_failed
            )
    return stats, pool.walk_error


def normalize_tree(
    target: str,
    patterns: Optional[Sequence[str]] = None,
    max_workers: int = DEFAULT_WORKERS,
    include_ignored: bool = False,
    show_progress: Optional[bool] = None,
) -> Tuple[RunStats, Optional[WalkError]]:
    """Normalize a single file or every matching file beneath a directory."""
    root_dir = target if os.path.isdir(target) else os.path.dirname(target) or os.curdir
    is_ignored = None if include_ignored else load_ignore_predicate(root_dir)
    # Shared with the walk so a cancelled run stops enumerating promptly.
    cancelled = threading.Event()
    candidates = find_files(
        target, patterns or DEFAULT_PATTERNS, is_ignored, cancelled=cancelled
    )
    return process_files_parallel(candidates, max_workers, show_progress, cancelled)


def main() -> int:  # pylint: disable=too-many-return-statements
    try:
        # Get the program version from the module
        version: str = getattr(sys.modules[__name__], "__version__", "1.0.0")

        parser = argparse.ArgumentParser(
            description="Strip trailing whitespace and trailing blank lines from text files"
        )
        parser.add_argument(
            "path",
            nargs="?",
            default=None,
            help="File or directory to process (default: current directory)",
        )
        parser.add_argument(
            "--pattern",
            default=None,
            help="Comma-separated list of file patterns to process "
            "(e.g. '*.py,*.md,.txt')",
        )
        parser.add_argument(
            "--verbose", action="store_true", help="Enable verbose logging"
        )
        parser.add_argument(
            "--workers",
            type=int,
            default=DEFAULT_WORKERS,
            help=f"Number of worker threads (default: {DEFAULT_WORKERS})",
        )
        parser.add_argument(
            "-u",
            "--include-ignored",
            action="store_true",
            help="Process files excluded by .gitignore as well",
        )
        parser.add_argument(
            "--no-progress", action="store_true", help="Hide the progress bar"
        )
        parser.add_argument(
            "--version",
            action="version",
            version=f"TrimForge v{version}",
            help="Show program version and exit",
        )

        args = parser.parse_args()

        # Set logging level based on verbosity
        if args.verbose:
            logger.setLevel(logging.DEBUG)

        target: str = args.path if args.path else os.curdir
        if not os.path.exists(target):
            logger.error("Error: '%s' does not exist.", target)
            return 1

        # Validate workers count
        workers: int = args.workers
        if workers <= 0:
            logger.warning(
                "Invalid worker count (%d), using %d instead", workers, DEFAULT_WORKERS
            )
            workers = DEFAULT_WORKERS

        patterns = parse_patterns(args.pattern)
        logger.debug("Patterns: %s", ", ".join(patterns))
        logger.debug("Honor .gitignore: %s", "No" if args.include_ignored else "Yes")

        stats, walk_error = normalize_tree(
            target,
            patterns,
            max_workers=workers,
            include_ignored=args.include_ignored,
            show_progress=False if args.no_progress else None,
        )

        logger.info(stats.summary())
        if walk_error is not None:
            logger.error("Error walking directory: %s", str(walk_error))
            return 1
        return 0
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user.")
        return 130
    except Exception as e:  # pylint: disable=broad-exception-caught
        logger.error("An unexpected error occurred: %s", str(e))
        if logger.level <= logging.DEBUG:
            import traceback  # pylint: disable=import-outside-toplevel

            logger.debug("Traceback: %s", traceback.format_exc())
        return 1


if __name__ == "__main__":
    sys.exit(main())
