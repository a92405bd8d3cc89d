"""
Wrappers around the mysqldump and mysql command-line utilities.

Both run as child processes with stderr captured to a temporary file and a
timer that kills the child once the timeout expires. Stderr is scanned for
known problem markers even when the exit code is 0, because mysqldump can
exit cleanly after silently skipping objects it was not allowed to read.
"""

import logging
import subprocess
import tempfile
import threading
from typing import BinaryIO, Callable, List, Optional, TypeVar

from .errors import DumpError
from .sources import ConnectionSettings


logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_TIMEOUT = 30 * 60
CHUNK_SIZE = 64 * 1024

# Lowercase substrings in mysqldump stderr that fail an otherwise clean dump
DUMP_WARNING_PATTERNS = (
    'access denied',
    'got error',
    'warning:',
    'error:',
    'mysqldump:',
    'cannot',
    'failed',
    'denied',
)

# Lowercase substrings in mysql stderr that fail an otherwise clean load
RESTORE_ERROR_PATTERNS = (
    'error',
    'failed',
    'cannot',
    'denied',
    'access denied',
    'unknown database',
)

# Stderr lines that are always printed when a password is passed on the
# command line; they say nothing about the dump itself
BENIGN_STDERR_MARKERS = (
    'using a password on the command line interface can be insecure',
)


def mask_command(args: List[str]) -> str:
    """Render a command line for logs with the password replaced by ***."""
    return ' '.join(
        '--password=***' if arg.startswith('--password=') else arg
        for arg in args
    )


def find_problem(stderr: str, patterns) -> Optional[str]:
    """
    Return the first pattern found in stderr, ignoring benign lines.

    Matching is case-insensitive.
    """
    lines = [
        line for line in stderr.lower().splitlines()
        if not any(marker in line for marker in BENIGN_STDERR_MARKERS)
    ]
    relevant = '\n'.join(lines)
    for pattern in patterns:
        if pattern in relevant:
            return pattern
    return None


def connection_args(settings: ConnectionSettings) -> List[str]:
    args = [
        f"--host={settings.host}",
        f"--port={settings.port}",
        f"--user={settings.user}",
    ]
    if settings.password:
        args.append(f"--password={settings.password}")
    return args


def get_tool_version(binary: str) -> str:
    """
    Get the version banner of a client utility (e.g. 'mysqldump --version').

    Returns an empty string when the utility is missing or fails.
    """
    try:
        result = subprocess.run(
            [binary, '--version'],
            capture_output=True,
            timeout=10,
            check=True
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"Could not read version of {binary}: {e}")
        return ''
    return result.stdout.decode('utf-8', errors='replace').strip()


class _ChildProcess:
    """A started utility process with a kill timer and captured stderr."""

    def __init__(self, command: List[str], timeout: int, stdin=None, stdout=None):
        self.command = command
        self.timeout = timeout
        self.timed_out = False
        self._stderr_file = tempfile.TemporaryFile()
        self.process = subprocess.Popen(
            command,
            stdin=stdin,
            stdout=stdout,
            stderr=self._stderr_file
        )
        self._timer = threading.Timer(timeout, self._on_timeout)
        self._timer.daemon = True
        self._timer.start()

    def _on_timeout(self):
        self.timed_out = True
        self.kill()

    def kill(self):
        if self.process.poll() is None:
            try:
                self.process.kill()
            except OSError:
                pass

    def wait(self) -> int:
        try:
            return self.process.wait()
        finally:
            self._timer.cancel()

    def read_stderr(self) -> str:
        self._stderr_file.seek(0)
        return self._stderr_file.read().decode('utf-8', errors='replace')

    def close(self):
        self._timer.cancel()
        for stream in (self.process.stdin, self.process.stdout):
            if stream is not None:
                try:
                    stream.close()
                except OSError:
                    pass
        self._stderr_file.close()


class MySQLDumper:
    """
    Runs mysqldump for one server.

    Args:
        settings: Connection settings for the source server
        binary: Executable to run (default 'mysqldump')
        timeout: Seconds before the dump is killed
    """

    def __init__(
        self,
        settings: ConnectionSettings,
        binary: str = 'mysqldump',
        timeout: int = DEFAULT_TIMEOUT
    ):
        self.settings = settings
        self.binary = binary
        self.timeout = timeout

    def build_args(
        self,
        database: str,
        tables: Optional[List[str]] = None,
        exclude_tables: Optional[List[str]] = None,
        schema_only: bool = False,
        routines: bool = True,
        triggers: bool = True,
        events: bool = True
    ) -> List[str]:
        """Build the mysqldump argument list (without the executable)."""
        args = connection_args(self.settings)
        args.extend([
            '--single-transaction',
            '--quick',
            '--skip-lock-tables',
            '--no-tablespaces',
            '--set-gtid-purged=OFF',
        ])
        if routines:
            args.append('--routines')
        if triggers:
            args.append('--triggers')
        if events:
            args.append('--events')
        if schema_only:
            args.append('--no-data')

        args.append(database)
        args.extend(tables or [])
        for table in exclude_tables or []:
            args.append(f"--ignore-table={database}.{table}")
        return args

    def dump(
        self,
        database: str,
        consumer: Callable[[BinaryIO], T],
        tables: Optional[List[str]] = None,
        exclude_tables: Optional[List[str]] = None,
        schema_only: bool = False,
        log: Optional[Callable[[str], None]] = None
    ) -> T:
        """
        Run mysqldump and hand its stdout to consumer.

        Args:
            database: Database to dump
            consumer: Called with the stdout stream; its return value is returned
            tables: Only dump these tables
            exclude_tables: Skip these tables
            schema_only: Dump structure without rows
            log: Optional callback receiving the masked command line

        Returns:
            Whatever consumer returned

        Raises:
            DumpError: On start failure, timeout, non-zero exit or stderr problems
        """
        args = self.build_args(database, tables, exclude_tables, schema_only)
        command = [self.binary] + args
        if log:
            log(f"Running: {mask_command(command)}")

        try:
            child = _ChildProcess(command, self.timeout, stdout=subprocess.PIPE)
        except OSError as e:
            raise DumpError(
                database, self.binary, exit_code=-1,
                message=f"failed to start {self.binary}: {e}"
            ) from e

        try:
            try:
                result = consumer(child.process.stdout)
            except BaseException:
                child.kill()
                child.wait()
                raise
            exit_code = child.wait()
            stderr = child.read_stderr()
        finally:
            child.close()

        if child.timed_out:
            raise DumpError(
                database, self.binary, stderr, exit_code,
                message=f"timed out after {self.timeout}s"
            )
        if exit_code != 0:
            raise DumpError(database, self.binary, stderr, exit_code)

        problem = find_problem(stderr, DUMP_WARNING_PATTERNS)
        if problem:
            raise DumpError(
                database, self.binary, stderr, 0,
                message=f"{self.binary} completed but reported warnings"
            )
        return result

    def get_version(self) -> str:
        return get_tool_version(self.binary)


class MySQLRestorer:
    """
    Runs the mysql client to load a dump into a database.

    Args:
        settings: Connection settings for the target server
        binary: Executable to run (default 'mysql')
        timeout: Seconds before the load is killed
    """

    def __init__(
        self,
        settings: ConnectionSettings,
        binary: str = 'mysql',
        timeout: int = DEFAULT_TIMEOUT
    ):
        self.settings = settings
        self.binary = binary
        self.timeout = timeout

    def build_args(self, database: str) -> List[str]:
        return connection_args(self.settings) + [database]

    def restore(
        self,
        database: str,
        reader: BinaryIO,
        log: Optional[Callable[[str], None]] = None
    ) -> int:
        """
        Pipe SQL from reader into the mysql client.

        Args:
            database: Target database
            reader: Stream with raw SQL
            log: Optional callback receiving the masked command line

        Returns:
            Number of SQL bytes sent

        Raises:
            DumpError: On start failure, timeout, non-zero exit or stderr errors
        """
        if not database:
            raise DumpError('', self.binary, exit_code=-1, message='database name is required')

        command = [self.binary] + self.build_args(database)
        if log:
            log(f"Running: {mask_command(command)}")

        try:
            child = _ChildProcess(command, self.timeout, stdin=subprocess.PIPE)
        except OSError as e:
            raise DumpError(
                database, self.binary, exit_code=-1,
                message=f"failed to start {self.binary}: {e}"
            ) from e

        sent = 0
        try:
            try:
                while True:
                    chunk = reader.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    child.process.stdin.write(chunk)
                    sent += len(chunk)
                child.process.stdin.close()
            except BrokenPipeError:
                # The client exited early; its exit code and stderr explain why
                pass
            except BaseException:
                child.kill()
                child.wait()
                raise
            exit_code = child.wait()
            stderr = child.read_stderr()
        finally:
            child.close()

        if child.timed_out:
            raise DumpError(
                database, self.binary, stderr, exit_code,
                message=f"timed out after {self.timeout}s"
            )
        if exit_code != 0:
            raise DumpError(
                database, self.binary, stderr, exit_code,
                message='restore failed'
            )

        problem = find_problem(stderr, RESTORE_ERROR_PATTERNS)
        if problem:
            raise DumpError(
                database, self.binary, stderr, 0,
                message=f"{self.binary} completed but reported errors"
            )
        return sent

    def get_version(self) -> str:
        return get_tool_version(self.binary)
