#!/usr/bin/env python3
"""macpublish - universal macOS application bundler for .NET projects.

This module provides tools for:
1. Publishing a self-contained build once per CPU architecture
2. Merging the files both builds have in common into a shared folder
3. Signing, packaging (.pkg, .dmg) and notarizing the resulting bundle

Every build configuration (Debug, Release) produces one bundle:

    MyApp.app
        Contents
            MacOS
                osx-arm64/    self-contained arm64 build
                osx-x64/      self-contained x86_64 build
                shared/       files identical in both builds
                MyApp.sh      launcher picking the build for the host
            Resources/        icon.icns and other assets
            Info.plist

Usage (CLI):
    macpublish MyApp/MyApp.csproj
    macpublish MyApp/MyApp.csproj --dry-run
    macpublish MyApp/MyApp.csproj -i "Developer ID Application: John Doe (ABCD123456)" --notarize

Usage (API):
    from macpublish import PipelineDriver, PublishSettings

    settings = PublishSettings(project_file="MyApp/MyApp.csproj")
    status = PipelineDriver(settings).run()

    # Deduplicate two existing build trees
    Deduplicator("out/osx-arm64", "out/osx-x64", "out/shared").process()
"""

import argparse
import contextlib
import datetime
import enum
import hashlib
import itertools
import logging
import os
import re
import shutil
import signal
import stat
import struct
import subprocess
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import find_dotenv, load_dotenv
from macholib.mach_o import CPU_TYPE_NAMES
from macholib.MachO import MachO

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

# Environment variable names
ENV_SIGN_IDENTITY = "SIGN_IDENTITY"
ENV_INSTALLER_IDENTITY = "INSTALLER_IDENTITY"
ENV_KEYCHAIN_PROFILE = "KEYCHAIN_PROFILE"

# Config file section holding publish options
CONFIG_SECTION = "publish"

DEFAULT_OUTPUT_DIR = Path("bin") / "UniversalBundleApp"
DEFAULT_KEYCHAIN_PROFILE = "MacPublishProfile"

PROJECT_SUFFIXES = (".csproj", ".sln")

# Tools that must be on PATH before anything is published
REQUIRED_TOOLS = ("dotnet", "codesign", "xcrun", "hdiutil")

PLIST_BUDDY = "/usr/libexec/PlistBuddy"
APPLICATIONS_DIR = "/Applications"

# Project-level inputs
INFO_PLIST = "Info.plist"
ENTITLEMENTS_PLIST = "Entitlements.plist"
ASSETS_DIR = "Assets"

# Folder under Contents/MacOS receiving files common to both architectures
SHARED_DIR = "shared"

# Finder metadata that must not end up in a disk image
STRAY_FILES = {".DS_Store"}

# Version fields patched into Info.plist
VERSION_KEYS = ("CFBundleVersion", "CFBundleShortVersionString")

# Process exit codes
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CANCELED = 130

# Exit code reported for a command that could not be started
COMMAND_NOT_FOUND = 127

HASH_CHUNK_SIZE = 1024 * 1024

LAUNCHER_TMPL = """\
#!/bin/sh

DIR=$(dirname "$0")
ARM64=$(sysctl -in hw.optional.arm64 2>/dev/null)

if [ "$ARM64" = "1" ]; then
    exec "$DIR/{primary}/{executable}" "$@"
else
    exec "$DIR/{secondary}/{executable}" "$@"
fi
"""


class BuildConfiguration(enum.Enum):
    """Build configurations, published in declaration order."""

    DEBUG = "Debug"
    RELEASE = "Release"


@dataclass(frozen=True)
class ArchitectureTarget:
    """One CPU architecture carried by the bundle.

    Attributes:
        rid: .NET runtime identifier, also the folder name under MacOS
        cpu_name: CPU type name as reported by macholib
    """

    rid: str
    cpu_name: str


PRIMARY_ARCH = ArchitectureTarget("osx-arm64", "ARM64")
SECONDARY_ARCH = ArchitectureTarget("osx-x64", "x86_64")
ARCHITECTURES = (PRIMARY_ARCH, SECONDARY_ARCH)


def default_version() -> str:
    """Return a timestamp version such as 25.06.30.1442."""
    return datetime.datetime.now().strftime("%y.%m.%d.%H%M")


# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .macpublish.toml in current directory
    3. macpublish.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        ConfigurationError: If a config file exists but is not valid TOML

    Example .macpublish.toml:
        [publish]
        output = "dist"
        identity = "Developer ID Application: John Doe (ABCD123456)"
        installer_identity = "Developer ID Installer: John Doe (ABCD123456)"
        keychain_profile = "AC_PROFILE"
    """
    if config_path and config_path.exists():
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [
            cwd / ".macpublish.toml",
            cwd / "macpublish.toml",
        ]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigurationError(
                    f"Invalid config file {path}: {e}"
                ) from e
            return data

    return {}


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a value from config with section.key lookup.

    Args:
        config: Configuration dictionary
        section: Section name (e.g., "publish")
        key: Key name within section
        default: Default value if not found

    Returns:
        Configuration value or default
    """
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if value is None or isinstance(value, str):
        return value
    return default


def resolve_option(
    value: str | None,
    config: dict[str, object],
    key: str,
    env: str | None = None,
    default: str | None = None,
) -> str | None:
    """Resolve an option: command line, then config file, then environment."""
    if value:
        return value
    value = get_config_value(config, CONFIG_SECTION, key)
    if value:
        return value
    if env:
        value = os.getenv(env)
        if value:
            return value
    return default


# ----------------------------------------------------------------------------
# Error handling


class BundlerError(Exception):
    """Base exception class for macpublish errors."""


class CommandError(BundlerError):
    """Exception raised when a command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class CanceledError(BundlerError):
    """Exception raised when cancellation is observed at a checkpoint."""


class FileError(BundlerError):
    """Exception raised when a file operation fails."""


class ConfigurationError(BundlerError):
    """Exception raised when configuration is invalid."""


class ValidationError(BundlerError):
    """Exception raised when validation fails."""


class PublishError(BundlerError):
    """Exception raised when an architecture build fails."""


class DeduplicationError(BundlerError):
    """Exception raised when common files cannot be linked."""


class CodesignError(BundlerError):
    """Exception raised when codesigning fails."""


class PackagingError(BundlerError):
    """Exception raised when .pkg or .dmg packaging fails."""


class NotarizationError(BundlerError):
    """Exception raised when notarization fails."""


# ----------------------------------------------------------------------------
# Input validation

# Signing identities as listed by `security find-identity`, e.g.
# "Developer ID Application: John Doe (ABCD123456)", or a SHA-1 fingerprint
IDENTITY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9\s\.\-\,\'\:\(\)&]+$")
MAX_IDENTITY_LENGTH = 200
FINGERPRINT_PATTERN = re.compile(r"^[A-Fa-f0-9]{40}$")


def validate_file(path: Pathlike) -> None:
    """Validate a project-level input file before it is bundled.

    The file must exist, be a regular file (not a symlink), be readable
    and be non-empty.

    Args:
        path: Path to the file to validate

    Raises:
        ValidationError: If any validation check fails
    """
    path = Path(path)

    if not path.exists():
        raise ValidationError(f"File does not exist: {path}")

    if path.is_symlink():
        raise ValidationError(f"File is a symbolic link: {path}")

    if not path.is_file():
        raise ValidationError(f"Path is not a regular file: {path}")

    if not os.access(path, os.R_OK):
        raise ValidationError(f"File is not readable: {path}")

    try:
        size = path.stat().st_size
    except OSError as e:
        raise ValidationError(f"Cannot stat file {path}: {e}") from e

    if size == 0:
        raise ValidationError(f"File is empty (zero bytes): {path}")


def validate_identity(identity: str) -> None:
    """Validate the format of a signing or installer identity.

    Args:
        identity: Identity name or SHA-1 fingerprint

    Raises:
        ValidationError: If the identity is empty or malformed
    """
    if not identity or not identity.strip():
        raise ValidationError("Signing identity cannot be empty")

    identity = identity.strip()

    if len(identity) > MAX_IDENTITY_LENGTH:
        raise ValidationError(
            f"Signing identity is too long (max {MAX_IDENTITY_LENGTH} "
            f"characters): '{identity}'"
        )

    if not IDENTITY_PATTERN.match(identity):
        raise ValidationError(
            f"Signing identity has invalid format: '{identity}'"
        )


def identity_listed(identity: str, listing: str) -> bool:
    """Whether `security find-identity` output lists identity.

    A fingerprint must match a whole hash column; a name must match a
    whole quoted name.
    """
    identity = identity.strip()
    if FINGERPRINT_PATTERN.match(identity):
        return any(
            line.split()[1:2] == [identity.upper()]
            for line in listing.upper().splitlines()
        )
    return f'"{identity}"' in listing


def validate_project_file(path: Pathlike) -> Path:
    """Check that path names an existing .csproj or .sln file."""
    path = Path(path)
    if path.suffix.lower() not in PROJECT_SUFFIXES:
        raise ValidationError(
            f"Project file must be a .csproj or .sln: {path}"
        )
    if not path.is_file():
        raise ValidationError(f"Project file not found: {path}")
    return path


# ----------------------------------------------------------------------------
# Progress indicator


class ProgressSpinner:
    """A terminal spinner showing elapsed time during a blocking wait.

    Example:
        with ProgressSpinner("Waiting for notarization"):
            runner.run(command)
    """

    SPINNER_CHARS = ["|", "/", "-", "\\"]

    def __init__(self, message: str = "", stream=None):
        self.message = message
        self.stream = stream or sys.stdout
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._started = 0.0

    def _spin(self) -> None:
        spinner = itertools.cycle(self.SPINNER_CHARS)
        while not self._stop_event.wait(0.1):
            elapsed = time.monotonic() - self._started
            self.stream.write(
                f"\r{self.message} {next(spinner)} {elapsed:4.0f}s "
            )
            self.stream.flush()
        elapsed = time.monotonic() - self._started
        self.stream.write(f"\r{self.message} done ({elapsed:.0f}s)\n")
        self.stream.flush()

    def start(self) -> None:
        """Start the spinner."""
        self._started = time.monotonic()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._spin, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the spinner."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=1.0)

    def __enter__(self) -> "ProgressSpinner":
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()


# ----------------------------------------------------------------------------
# Logging configuration

# Level for "step succeeded" outcomes, between INFO and WARNING
SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        cyan = "\x1b[36;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    cfmt = (
        f"{color.white}%(delta)s{color.reset} - "
        f"{{}}%(levelname)s{color.reset} - "
        f"{color.white}%(name)s{color.reset} - "
        f"{{}}%(message)s{color.reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(color.grey, color.grey),
        logging.INFO: cfmt.format(color.cyan, color.grey),
        SUCCESS: cfmt.format(color.green, color.green),
        logging.WARNING: cfmt.format(color.yellow, color.yellow),
        logging.ERROR: cfmt.format(color.red, color.red),
        logging.CRITICAL: cfmt.format(color.bold_red, color.bold_red),
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.fmt = "%(delta)s - %(levelname)s - %(name)s - %(message)s"

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        if not self.use_color:
            log_fmt = self.fmt
        else:
            log_fmt = self.FORMATS.get(record.levelno, self.fmt)
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def setup_logging(debug: bool = False, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
        force=True,
    )


# ----------------------------------------------------------------------------
# Command execution


@dataclass(frozen=True)
class CommandOutcome:
    """Exit code and captured output of one external command."""

    returncode: int
    stdout: str = ""
    stderr: str = ""
    canceled: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.canceled

    def check(self, command: list[str]) -> "CommandOutcome":
        """Return self, or raise CommandError if the command failed."""
        if self.canceled:
            raise CanceledError(f"Canceled: {' '.join(command)}")
        if self.returncode != 0:
            raise CommandError(
                " ".join(command),
                self.returncode,
                self.stderr.strip() or self.stdout.strip(),
            )
        return self


def _drain(pipe, lines: list[str]) -> None:
    """Read a text pipe line by line until end-of-stream."""
    with pipe:
        for line in pipe:
            lines.append(line)


class CommandRunner:
    """Runs external programs, capturing output, with cooperative cancellation.

    A command completes when the process has exited and both stdout and
    stderr have reached end-of-stream. While waiting, the cancellation
    event is polled every `poll_interval` seconds; once it is set the
    process is terminated (killed after `kill_timeout`) and the outcome
    is returned with `canceled=True`.

    Failures are never raised: a program that cannot be started reports
    exit code 127 with the OS error on stderr.
    """

    poll_interval = 0.1
    kill_timeout = 5.0

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def run(
        self,
        command: list[str],
        cancel: threading.Event | None = None,
        cwd: Pathlike | None = None,
    ) -> CommandOutcome:
        """Run command and return its outcome."""
        self.log.debug("%s", " ".join(command))
        if cancel is not None and cancel.is_set():
            return CommandOutcome(-1, canceled=True)

        try:
            process = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                cwd=cwd,
                shell=False,
            )
        except OSError as e:
            return CommandOutcome(COMMAND_NOT_FOUND, "", f"{command[0]}: {e}")

        stdout_lines: list[str] = []
        stderr_lines: list[str] = []
        readers = [
            threading.Thread(
                target=_drain, args=(process.stdout, stdout_lines), daemon=True
            ),
            threading.Thread(
                target=_drain, args=(process.stderr, stderr_lines), daemon=True
            ),
        ]
        for reader in readers:
            reader.start()

        canceled = not self._wait(process, readers, cancel)
        if canceled:
            self._terminate(process)
            self.log.debug("canceled: %s", command[0])

        return CommandOutcome(
            process.returncode if process.returncode is not None else -1,
            "".join(stdout_lines),
            "".join(stderr_lines),
            canceled=canceled,
        )

    def _wait(
        self,
        process: subprocess.Popen,
        readers: list[threading.Thread],
        cancel: threading.Event | None,
    ) -> bool:
        """Wait for exit and end-of-stream; False if canceled first."""
        while True:
            try:
                process.wait(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    return False
        for reader in readers:
            while reader.is_alive():
                reader.join(timeout=self.poll_interval)
                if cancel is not None and cancel.is_set():
                    return False
        return True

    def _terminate(self, process: subprocess.Popen) -> None:
        if process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=self.kill_timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()


# ----------------------------------------------------------------------------
# Mach-O inspection

# Mach-O magic numbers for binary detection
MACHO_MAGIC_NUMBERS = {
    b"\xfe\xed\xfa\xce",  # MH_MAGIC (32-bit)
    b"\xce\xfa\xed\xfe",  # MH_CIGAM (32-bit, reverse byte order)
    b"\xfe\xed\xfa\xcf",  # MH_MAGIC_64 (64-bit)
    b"\xcf\xfa\xed\xfe",  # MH_CIGAM_64 (64-bit, reverse byte order)
    b"\xca\xfe\xba\xbe",  # FAT_MAGIC (universal binary)
    b"\xbe\xba\xfe\xca",  # FAT_CIGAM (universal binary, reverse byte order)
}


def is_valid_macho(path: Pathlike) -> bool:
    """Check if a file starts with a Mach-O magic number."""
    path = Path(path)
    if not path.is_file():
        return False
    try:
        with open(path, "rb") as f:
            magic = f.read(4)
        return magic in MACHO_MAGIC_NUMBERS
    except OSError:
        return False


def get_binary_architectures(binary_path: Pathlike) -> list[str]:
    """Get the CPU types of a Mach-O binary using macholib.

    Args:
        binary_path: Path to the binary file

    Returns:
        List of CPU type names (e.g., ["x86_64", "ARM64"]).
        Empty list if the file is not a readable Mach-O binary.
    """
    path = Path(binary_path)
    if not is_valid_macho(path):
        return []
    try:
        macho = MachO(str(path))
    except (ValueError, OSError, struct.error):
        return []
    archs = []
    for header in macho.headers:
        cputype = header.header.cputype
        archs.append(CPU_TYPE_NAMES.get(cputype, str(cputype)))
    return archs


# ----------------------------------------------------------------------------
# Filesystem helpers


def copy_tree(
    src: Pathlike, dest: Pathlike, cancel: threading.Event | None = None
) -> bool:
    """Copy the contents of src into dest, one file at a time.

    Symbolic links are recreated rather than followed.

    Returns:
        True when everything was copied, False if cancellation stopped
        the copy part way.
    """
    src = Path(src)
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    for root, folders, files in os.walk(src):
        root_path = Path(root)
        target_root = dest / root_path.relative_to(src)
        target_root.mkdir(parents=True, exist_ok=True)
        linked_folders = [f for f in folders if (root_path / f).is_symlink()]
        for name in sorted(files) + linked_folders:
            if cancel is not None and cancel.is_set():
                return False
            source = root_path / name
            target = target_root / name
            if source.is_symlink():
                if target.is_symlink() or target.exists():
                    target.unlink()
                os.symlink(os.readlink(source), target)
            else:
                shutil.copy2(source, target)
    return True


class BundleFolder:
    """A folder of the bundle tree; honours dry-run."""

    def __init__(self, path: Pathlike, dry_run: bool = False):
        self.path = Path(path)
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

    def create(self) -> None:
        """Create the folder if it doesn't exist."""
        if self.dry_run:
            self.log.info("[DRY RUN] Would create directory %s", self.path)
            return
        if not self.path.exists():
            self.path.mkdir(parents=True)
        if not self.path.is_dir():
            raise FileError(f"{self.path} is not a directory")

    def remove(self) -> None:
        """Delete the folder and everything below it."""
        if self.dry_run:
            self.log.info(
                "[DRY RUN] Would remove directory %s if it exists", self.path
            )
            return
        if self.path.is_symlink():
            self.path.unlink()
        elif self.path.exists():
            shutil.rmtree(self.path)

    def copy_contents(
        self, src: Pathlike, cancel: threading.Event | None = None
    ) -> None:
        """Copy everything inside src into this folder."""
        if self.dry_run:
            self.log.info("[DRY RUN] Would copy %s to %s", src, self.path)
            return
        copy_tree(src, self.path, cancel)


# ----------------------------------------------------------------------------
# Deduplication


def file_hash(path: Pathlike, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Return the SHA-256 hex digest of a file's content."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def top_level_files(directory: Pathlike) -> list[Path]:
    """Regular files directly inside directory, sorted by name.

    Subdirectories and symbolic links are skipped.
    """
    return sorted(
        p
        for p in Path(directory).iterdir()
        if p.is_file() and not p.is_symlink()
    )


def unique_target(directory: Path, name: str) -> Path:
    """First free path for name in directory: name, name_1, name_2, ..."""
    stem, suffix = os.path.splitext(name)
    target = directory / name
    count = 1
    while target.exists() or target.is_symlink():
        target = directory / f"{stem}_{count}{suffix}"
        count += 1
    return target


def relative_symlink(link: Path, target: Path) -> None:
    """Replace link with a symlink to target, relative to link's folder.

    The symlink is made under a hidden sibling name and renamed over link,
    so link is never missing, even when creating the symlink fails.
    """
    relative = os.path.relpath(target, link.parent)
    staging = link.with_name(f".{link.name}.link")
    if staging.is_symlink() or staging.exists():
        staging.unlink()
    os.symlink(relative, staging)
    try:
        os.replace(staging, link)
    except OSError:
        staging.unlink()
        raise


@dataclass(frozen=True)
class DuplicateLink:
    """Two originals with identical content, now links to one shared file."""

    original_a: Path
    original_b: Path
    shared: Path


class Deduplicator:
    """Moves files common to two build trees into a shared folder.

    Only the top-level regular files of `dir_a` and `dir_b` are compared,
    by SHA-256 of their content. For each match the `dir_a` file is copied
    into `shared_dir` (renamed `name_1`, `name_2`, ... on a collision) and
    both originals are replaced by relative symbolic links to that copy.

    When `dir_a` holds several files with the same content, the one that
    sorts first by name is used. A further `dir_b` file with content that
    was already moved is linked to the existing shared copy.

    Cancellation is checked between files and around each hash. Once a
    pair starts being relinked it is always completed, so a cancelled run
    leaves every original either untouched or fully linked.

    Args:
        dir_a: First build tree
        dir_b: Second build tree
        shared_dir: Folder receiving the shared copies (created if absent)
        cancel: Optional cancellation event

    Example:
        links = Deduplicator("MacOS/osx-arm64", "MacOS/osx-x64",
                             "MacOS/shared").process()
    """

    def __init__(
        self,
        dir_a: Pathlike,
        dir_b: Pathlike,
        shared_dir: Pathlike,
        cancel: threading.Event | None = None,
    ) -> None:
        self.dir_a = Path(dir_a).resolve()
        self.dir_b = Path(dir_b).resolve()
        self.shared_dir = Path(shared_dir).resolve()
        self.cancel = cancel
        self.links: list[DuplicateLink] = []
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def canceled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    def index(self, files: list[Path]) -> dict[str, Path] | None:
        """Map content hash to path; None if canceled while indexing."""
        hashes: dict[str, Path] = {}
        for path in files:
            if self.canceled:
                return None
            hashes.setdefault(file_hash(path), path)
        return hashes

    def process(self) -> list[DuplicateLink]:
        """Link the common files and return what was linked.

        Raises:
            DeduplicationError: If a filesystem operation fails
        """
        if self.dir_a == self.dir_b:
            raise DeduplicationError(
                f"Cannot deduplicate a directory against itself: {self.dir_a}"
            )
        if self.canceled:
            self.log.warning("Deduplication canceled before it started")
            return self.links
        try:
            self._process()
        except OSError as e:
            raise DeduplicationError(
                f"Failed to link common files of {self.dir_a} and "
                f"{self.dir_b}: {e}"
            ) from e
        return self.links

    def _process(self) -> None:
        self.shared_dir.mkdir(parents=True, exist_ok=True)
        files_a = top_level_files(self.dir_a)
        files_b = top_level_files(self.dir_b)

        self.log.debug("indexing %d files in %s", len(files_a), self.dir_a)
        hashes_a = self.index(files_a)
        if hashes_a is None:
            self.log.warning("Deduplication canceled while indexing")
            return

        self.log.debug("comparing %d files in %s", len(files_b), self.dir_b)
        merged: dict[str, DuplicateLink] = {}
        for path_b in files_b:
            if self.canceled:
                self.log.warning(
                    "Deduplication canceled after %d links", len(self.links)
                )
                return
            digest = file_hash(path_b)
            if self.canceled:
                return

            if digest in merged:
                shared = merged[digest].shared
                relative_symlink(path_b, shared)
                link = DuplicateLink(merged[digest].original_a, path_b, shared)
            elif digest in hashes_a:
                link = self.merge(hashes_a[digest], path_b)
                merged[digest] = link
            else:
                continue

            self.links.append(link)
            self.log.debug(
                "linked: %s and %s -> %s",
                link.original_a,
                link.original_b,
                link.shared,
            )

    def merge(self, path_a: Path, path_b: Path) -> DuplicateLink:
        """Move one copy of a duplicate pair into the shared folder."""
        shared = unique_target(self.shared_dir, path_a.name)
        shutil.copy2(path_a, shared)
        relative_symlink(path_a, shared)
        relative_symlink(path_b, shared)
        return DuplicateLink(path_a, path_b, shared)


# ----------------------------------------------------------------------------
# Architecture publishing


@dataclass(frozen=True)
class PublishResult:
    """Outcome of publishing one architecture."""

    architecture: ArchitectureTarget
    success: bool
    output_dir: Path


class ArchitecturePublisher:
    """Publishes a self-contained build of a project for one architecture.

    The build goes to `<project dir>/bin/<configuration>/<rid>/publish` and
    is then copied into `<destination root>/<rid>`. Two publishers can run
    at the same time for different architectures: their scratch and
    destination folders never overlap.

    A failing build is reported through PublishResult.success, with the
    captured error output logged; it never raises.

    Args:
        project_file: Path to the .csproj or .sln file
        runner: CommandRunner used for `dotnet publish`
        dry_run: If True, only log what would be done
    """

    def __init__(
        self,
        project_file: Pathlike,
        runner: CommandRunner | None = None,
        dry_run: bool = False,
    ) -> None:
        self.project_file = Path(project_file)
        self.project_dir = self.project_file.parent.absolute()
        self.project_name = self.project_file.stem
        self.runner = runner or CommandRunner()
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

    def scratch_dir(
        self,
        architecture: ArchitectureTarget,
        configuration: BuildConfiguration,
    ) -> Path:
        return (
            self.project_dir
            / "bin"
            / configuration.value
            / architecture.rid
            / "publish"
        )

    def publish_command(
        self,
        architecture: ArchitectureTarget,
        configuration: BuildConfiguration,
        version: str,
    ) -> list[str]:
        """Build the `dotnet publish` command line."""
        debug_symbols = configuration is BuildConfiguration.DEBUG
        return [
            "dotnet",
            "publish",
            str(self.project_file),
            "--configuration",
            configuration.value,
            "--runtime",
            architecture.rid,
            "--output",
            str(self.scratch_dir(architecture, configuration)),
            f"-p:AssemblyVersion={version}",
            "-p:PublishReadyToRun=false",
            "-p:PublishSingleFile=true",
            "-p:TieredCompilation=false",
            "-p:PublishTrimmed=false",
            f"-p:DebugSymbols={str(debug_symbols).lower()}",
            "-p:IncludeNativeLibrariesForSelfExtract=true",
            "-p:IncludeAllContentForSelfExtract=true",
            "-p:AppendTargetFrameworkToOutputPath=false",
            "-nowarn:NU3004,CS8002,CS1591,NU1900",
            "--self-contained",
        ]

    def publish(
        self,
        architecture: ArchitectureTarget,
        configuration: BuildConfiguration,
        version: str,
        destination_root: Pathlike,
        cancel: threading.Event | None = None,
    ) -> PublishResult:
        """Build for architecture and copy the result into the bundle."""
        dest = Path(destination_root) / architecture.rid
        scratch = self.scratch_dir(architecture, configuration)
        command = self.publish_command(architecture, configuration, version)
        failed = PublishResult(architecture, False, dest)

        self.log.info("Publishing for RID: %s", architecture.rid)
        if self.dry_run:
            self.log.info("[DRY RUN] %s", " ".join(command))
            self.log.info("[DRY RUN] Would copy %s to %s", scratch, dest)
            return PublishResult(architecture, True, dest)

        outcome = self.runner.run(command, cancel)
        if outcome.stdout.strip():
            self.log.debug("%s", outcome.stdout.rstrip())
        if outcome.canceled:
            self.log.warning("Publish for %s canceled", architecture.rid)
            return failed
        if outcome.returncode != 0:
            self.log.error(
                "Publish failed for %s:\n%s",
                architecture.rid,
                outcome.stderr.strip() or outcome.stdout.strip(),
            )
            return failed
        if not scratch.is_dir():
            self.log.error(
                "Publish for %s produced no output in %s",
                architecture.rid,
                scratch,
            )
            return failed

        try:
            complete = copy_tree(scratch, dest, cancel)
        except OSError as e:
            self.log.error(
                "Failed to copy %s build into %s: %s", architecture.rid, dest, e
            )
            return failed
        if not complete:
            self.log.warning("Copy of %s build canceled", architecture.rid)
            return failed

        self.verify_architecture(architecture, dest)
        self.log.log(SUCCESS, "Publish for %s succeeded.", architecture.rid)
        return PublishResult(architecture, True, dest)

    def verify_architecture(
        self, architecture: ArchitectureTarget, output_dir: Path
    ) -> bool:
        """Warn when the published executable was built for another CPU.

        Returns:
            False only when the executable is a Mach-O binary lacking the
            target's CPU type
        """
        executable = output_dir / self.project_name
        archs = get_binary_architectures(executable)
        if not archs:
            self.log.debug("no Mach-O executable at %s", executable)
            return True
        if architecture.cpu_name not in archs:
            self.log.warning(
                "%s was published for %s but contains %s",
                executable,
                architecture.rid,
                ", ".join(archs),
            )
            return False
        self.log.debug("%s architecture: %s", executable, ", ".join(archs))
        return True


# ----------------------------------------------------------------------------
# Bundle assembly


@dataclass
class PublishSettings:
    """Everything one pipeline run needs to know.

    Args:
        project_file: Path to the .csproj or .sln file
        output_dir: Root folder for bundles and installers
        plist_dir: Folder holding Info.plist and Entitlements.plist
            (default: the project folder)
        identity: Code signing identity; signing is skipped when empty
        installer_identity: Installer signing identity; the .pkg is
            skipped when empty
        notarize: Whether to notarize and staple the disk image
        keychain_profile: notarytool keychain profile
        version: Version written into the build and Info.plist
        dry_run: If True, only log what would be done
        configurations: Build configurations to run, in order
    """

    project_file: Path
    output_dir: Path = DEFAULT_OUTPUT_DIR
    plist_dir: Path | None = None
    identity: str | None = None
    installer_identity: str | None = None
    notarize: bool = False
    keychain_profile: str = DEFAULT_KEYCHAIN_PROFILE
    version: str = field(default_factory=default_version)
    dry_run: bool = False
    configurations: tuple[BuildConfiguration, ...] = tuple(BuildConfiguration)

    def __post_init__(self) -> None:
        self.project_file = Path(self.project_file)
        self.output_dir = Path(self.output_dir).absolute()
        self.plist_dir = (
            Path(self.plist_dir) if self.plist_dir else self.project_dir
        )
        self.identity = (self.identity or "").strip() or None
        self.installer_identity = (self.installer_identity or "").strip() or None

    @property
    def project_name(self) -> str:
        return self.project_file.stem

    @property
    def project_dir(self) -> Path:
        return self.project_file.parent.absolute()

    @property
    def info_plist(self) -> Path:
        return self.plist_dir / INFO_PLIST

    @property
    def entitlements(self) -> Path:
        return self.plist_dir / ENTITLEMENTS_PLIST

    @property
    def assets_dir(self) -> Path:
        return self.project_dir / ASSETS_DIR

    @classmethod
    def from_args(
        cls, args: argparse.Namespace, config: dict[str, object]
    ) -> "PublishSettings":
        """Build settings from parsed arguments, config file and environment."""
        if args.notarize is None:
            notarize = False
            profile = None
        else:
            notarize = True
            profile = args.notarize or None

        if args.configuration:
            configurations = tuple(
                c for c in BuildConfiguration if c.value in args.configuration
            )
        else:
            configurations = tuple(BuildConfiguration)

        return cls(
            project_file=Path(args.project),
            output_dir=Path(
                resolve_option(
                    args.output, config, "output",
                    default=str(DEFAULT_OUTPUT_DIR),
                )
            ),
            plist_dir=resolve_option(args.plist_dir, config, "plist_dir"),
            identity=resolve_option(
                args.identity, config, "identity", ENV_SIGN_IDENTITY
            ),
            installer_identity=resolve_option(
                args.installer_identity,
                config,
                "installer_identity",
                ENV_INSTALLER_IDENTITY,
            ),
            notarize=notarize,
            keychain_profile=resolve_option(
                profile,
                config,
                "keychain_profile",
                ENV_KEYCHAIN_PROFILE,
                DEFAULT_KEYCHAIN_PROFILE,
            ),
            version=resolve_option(
                args.app_version, config, "app_version",
                default=default_version(),
            ),
            dry_run=args.dry_run,
            configurations=configurations,
        )


class Stage(enum.Enum):
    """States of the per-configuration assembly state machine."""

    SKELETON = "skeleton"
    PUBLISH = "publish"
    DEDUPLICATE = "deduplicate"
    PATCH_METADATA = "patch metadata"
    SIGN = "sign"
    INSTALLER_PACKAGE = "installer package"
    DISK_IMAGE = "disk image"
    NOTARIZE = "notarize"
    DONE = "done"


class BundleAssembler:
    """Assembles, signs and packages the universal bundle for one configuration.

    Stages run strictly in order, each only after the previous one
    succeeded:
    1. Skeleton: recreate the bundle tree, launcher, Info.plist, assets
    2. Publish: build both architectures concurrently
    3. Deduplicate: link common files into MacOS/shared (best effort)
    4. Patch metadata: write the version into Info.plist (warnings only)
    5. Sign: every file, then the bundle (when an identity is set)
    6. Installer package: signed .pkg (when an installer identity is set)
    7. Disk image: compressed .dmg of the output folder
    8. Notarize: submit the .dmg and staple the ticket (when requested)

    Cancellation is checked before each stage and between files; a
    cancelled or failed stage ends the run for this configuration.

    Args:
        settings: Run settings
        configuration: Build configuration to assemble
        runner: CommandRunner for every external command
        cancel: Cancellation event shared with the whole run
        publisher: ArchitecturePublisher (built from settings by default)

    Example:
        assembler = BundleAssembler(settings, BuildConfiguration.RELEASE)
        if not assembler.process():
            ...
    """

    def __init__(
        self,
        settings: PublishSettings,
        configuration: BuildConfiguration,
        runner: CommandRunner | None = None,
        cancel: threading.Event | None = None,
        publisher: ArchitecturePublisher | None = None,
    ) -> None:
        self.settings = settings
        self.configuration = configuration
        self.runner = runner or CommandRunner()
        self.cancel = cancel or threading.Event()
        self.dry_run = settings.dry_run
        self.publisher = publisher or ArchitecturePublisher(
            settings.project_file, runner=self.runner, dry_run=self.dry_run
        )
        self.log = logging.getLogger(self.__class__.__name__)
        self.history: list[Stage] = []

        name = settings.project_name
        version = settings.version
        output = settings.output_dir

        # Bundle structure paths
        self.bundle = output / configuration.value / f"{name}.app"
        self.contents = self.bundle / "Contents"
        self.macos = self.contents / "MacOS"
        self.shared = self.macos / SHARED_DIR
        self.resources = BundleFolder(self.contents / "Resources", self.dry_run)

        # Files
        self.info_plist = self.contents / INFO_PLIST
        self.launcher = self.macos / f"{name}.sh"

        # Distributables
        self.pkg = output / f"{name}-{version}-{configuration.value}.pkg"
        self.dmg = output.parent / f"{name}-{version}.dmg"
        self.applications_link = output / Path(APPLICATIONS_DIR).name

    @property
    def stages(self) -> list[tuple[Stage, object]]:
        return [
            (Stage.SKELETON, self.create_skeleton),
            (Stage.PUBLISH, self.publish),
            (Stage.DEDUPLICATE, self.deduplicate),
            (Stage.PATCH_METADATA, self.patch_metadata),
            (Stage.SIGN, self.sign),
            (Stage.INSTALLER_PACKAGE, self.build_installer),
            (Stage.DISK_IMAGE, self.create_disk_image),
            (Stage.NOTARIZE, self.notarize),
        ]

    def arch_dir(self, architecture: ArchitectureTarget) -> Path:
        return self.macos / architecture.rid

    def process(self) -> bool:
        """Run every stage; True only if all of them succeeded."""
        config = self.configuration.value
        self.log.info("Generating %s bundle %s", config, self.bundle)
        for stage, step in self.stages:
            if self.cancel.is_set():
                self.log.warning(
                    "%s canceled before stage '%s'", config, stage.value
                )
                return False
            self.history.append(stage)
            try:
                step()
            except CanceledError as e:
                self.log.warning(
                    "%s canceled during stage '%s': %s", config, stage.value, e
                )
                return False
            except (BundlerError, OSError) as e:
                self.log.error(
                    "%s stage '%s' failed: %s", config, stage.value, e
                )
                return False
        self.history.append(Stage.DONE)
        self.log.log(SUCCESS, "%s bundle complete: %s", config, self.bundle)
        return True

    # -- command helpers

    def _run(self, command: list[str]) -> CommandOutcome:
        """Run command unless in dry-run mode."""
        if self.dry_run:
            self.log.info("[DRY RUN] %s", " ".join(command))
            return CommandOutcome(0)
        outcome = self.runner.run(command, self.cancel)
        if outcome.stdout.strip():
            self.log.debug("%s", outcome.stdout.rstrip())
        return outcome

    def _run_checked(
        self,
        command: list[str],
        error: type[BundlerError],
        message: str,
    ) -> CommandOutcome:
        """Run command; raise error with message if it fails."""
        outcome = self._run(command)
        try:
            return outcome.check(command)
        except CommandError as e:
            raise error(f"{message}: {e.output or e}") from e

    def _check_canceled(self) -> None:
        if self.cancel.is_set():
            raise CanceledError("cancellation requested")

    # -- stages

    def create_skeleton(self) -> None:
        """Recreate the bundle tree and copy project-level inputs."""
        validate_file(self.settings.info_plist)

        BundleFolder(self.bundle, self.dry_run).remove()
        for folder in (
            self.macos,
            *(self.arch_dir(arch) for arch in ARCHITECTURES),
            self.shared,
        ):
            BundleFolder(folder, self.dry_run).create()
        self.resources.create()

        self.create_launcher()

        if self.dry_run:
            self.log.info(
                "[DRY RUN] Would copy %s to %s",
                self.settings.info_plist,
                self.info_plist,
            )
        else:
            shutil.copy2(self.settings.info_plist, self.info_plist)

        if self.settings.assets_dir.is_dir():
            self.resources.copy_contents(self.settings.assets_dir, self.cancel)

    def create_launcher(self) -> None:
        """Write the architecture-selecting launcher script."""
        content = LAUNCHER_TMPL.format(
            primary=PRIMARY_ARCH.rid,
            secondary=SECONDARY_ARCH.rid,
            executable=self.settings.project_name,
        )
        if self.dry_run:
            self.log.info("[DRY RUN] Would create launcher %s", self.launcher)
            return
        with open(self.launcher, "w", encoding="utf-8") as fopen:
            fopen.write(content)
        oldmode = os.stat(self.launcher).st_mode
        os.chmod(
            self.launcher,
            oldmode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH,
        )

    def publish(self) -> None:
        """Publish both architectures concurrently."""
        with ThreadPoolExecutor(
            max_workers=len(ARCHITECTURES), thread_name_prefix="publish"
        ) as pool:
            futures = [
                pool.submit(
                    self.publisher.publish,
                    arch,
                    self.configuration,
                    self.settings.version,
                    self.macos,
                    self.cancel,
                )
                for arch in ARCHITECTURES
            ]
            results = [future.result() for future in futures]

        self._check_canceled()
        failed = [r.architecture.rid for r in results if not r.success]
        if failed:
            raise PublishError(f"Publish failed for {', '.join(failed)}")

    def deduplicate(self) -> None:
        """Link files common to both architectures into the shared folder."""
        dir_a = self.arch_dir(PRIMARY_ARCH)
        dir_b = self.arch_dir(SECONDARY_ARCH)
        if self.dry_run:
            self.log.info(
                "[DRY RUN] Would link common files of %s and %s into %s",
                dir_a,
                dir_b,
                self.shared,
            )
            return
        try:
            links = Deduplicator(dir_a, dir_b, self.shared, self.cancel).process()
        except DeduplicationError as e:
            self.log.warning("Bundle keeps duplicate files: %s", e)
            return
        self.log.log(
            SUCCESS, "Linked %d common files into %s", len(links), self.shared
        )

    def patch_metadata(self) -> None:
        """Write the version into Info.plist when entitlements are present."""
        if not self.settings.entitlements.exists():
            self.log.debug(
                "no %s, leaving %s untouched", ENTITLEMENTS_PLIST, INFO_PLIST
            )
            return
        for key in VERSION_KEYS:
            outcome = self._run(
                [
                    PLIST_BUDDY,
                    "-c",
                    f"Set :{key} {self.settings.version}",
                    str(self.info_plist),
                ]
            )
            if outcome.canceled:
                return
            if not outcome.ok:
                self.log.warning(
                    "Failed to set %s in %s: %s",
                    key,
                    self.info_plist,
                    outcome.stderr.strip(),
                )

    def signable_files(self) -> list[Path]:
        """Regular files under Contents/MacOS; links into shared are skipped."""
        files = []
        for root, _folders, names in os.walk(self.macos):
            for name in names:
                path = Path(root) / name
                if path.is_symlink() or not path.is_file():
                    continue
                files.append(path)
        return sorted(files)

    def sign(self) -> None:
        """Sign each file, then the bundle with entitlements, then verify."""
        identity = self.settings.identity
        if not identity:
            self.log.debug("no signing identity, skipping code signing")
            return

        self.log.info("Starting code signing...")
        if self.dry_run:
            self.log.info("[DRY RUN] Would sign every file under %s", self.macos)
        for path in self.signable_files():
            self._check_canceled()
            self.log.info("Signing %s", path)
            self._run_checked(
                ["codesign", "--force", "--timestamp", "--sign", identity,
                 str(path)],
                CodesignError,
                f"Failed to sign file {path}",
            )

        self._check_canceled()
        command = ["codesign", "--force", "--timestamp"]
        if self.settings.entitlements.exists():
            command.extend(["--entitlements", str(self.settings.entitlements)])
        command.extend(["--sign", identity, str(self.bundle)])
        self.log.info("Signing bundle: %s", self.bundle)
        self._run_checked(command, CodesignError, "Failed to sign the bundle")

        self.verify_signature()
        self.assess_gatekeeper()
        self.log.log(SUCCESS, "Signed %s", self.bundle)

    def verify_signature(self) -> bool:
        outcome = self._run(
            ["codesign", "--verify", "--deep", "--strict", "--verbose=2",
             str(self.bundle)]
        )
        if not outcome.ok and not outcome.canceled:
            self.log.warning(
                "Bundle codesign verification failed: %s",
                outcome.stderr.strip(),
            )
        return outcome.ok

    def assess_gatekeeper(self) -> bool:
        outcome = self._run(
            ["spctl", "--assess", "--type", "execute", "--verbose=4",
             str(self.bundle)]
        )
        if not outcome.ok and not outcome.canceled:
            self.log.warning(
                "Bundle not accepted by Gatekeeper: %s", outcome.stderr.strip()
            )
        return outcome.ok

    def build_installer(self) -> None:
        """Build a signed .pkg installing the bundle into /Applications."""
        identity = self.settings.installer_identity
        if not identity:
            self.log.debug("no installer identity, skipping .pkg")
            return
        self.log.info("Building installer: %s", self.pkg)
        self._run_checked(
            [
                "productbuild",
                "--version",
                self.settings.version,
                "--component",
                str(self.bundle),
                APPLICATIONS_DIR,
                str(self.pkg),
                "--sign",
                identity,
            ],
            PackagingError,
            "Failed to generate pkg installer",
        )
        self.log.log(SUCCESS, "Installer created: %s", self.pkg)

    def remove_stray_files(self) -> None:
        """Delete Finder metadata files from the output folder."""
        output = self.settings.output_dir
        if self.dry_run:
            self.log.info("[DRY RUN] Would delete .DS_Store files under %s", output)
            return
        for root, _folders, names in os.walk(output):
            for name in names:
                if name in STRAY_FILES:
                    (Path(root) / name).unlink()

    def create_applications_link(self) -> bool:
        """Add an /Applications shortcut for drag-and-drop installs."""
        link = self.applications_link
        if self.dry_run:
            self.log.info("[DRY RUN] Would link %s to %s", link, APPLICATIONS_DIR)
            return False
        if link.is_symlink() or link.exists():
            self.log.debug("%s already exists, leaving it in place", link)
            return False
        try:
            os.symlink(APPLICATIONS_DIR, link)
        except OSError as e:
            self.log.warning(
                "Failed to create %s shortcut for DMG: %s", APPLICATIONS_DIR, e
            )
            return False
        return True

    def remove_applications_link(self) -> None:
        if self.dry_run:
            self.log.info(
                "[DRY RUN] Would remove link %s", self.applications_link
            )
            return
        if self.applications_link.is_symlink():
            self.applications_link.unlink()

    def create_disk_image(self) -> None:
        """Create a compressed DMG of the whole output folder."""
        self.remove_stray_files()
        link_created = self.create_applications_link()
        try:
            self.log.info("Creating DMG: %s", self.dmg)
            self._run_checked(
                [
                    "hdiutil",
                    "create",
                    "-volname",
                    self.settings.project_name,
                    "-srcfolder",
                    str(self.settings.output_dir),
                    "-ov",
                    "-format",
                    "UDZO",
                    str(self.dmg),
                ],
                PackagingError,
                "Failed to create DMG",
            )
        finally:
            if link_created or self.dry_run:
                self.remove_applications_link()
        self.log.log(SUCCESS, "DMG created: %s", self.dmg)

    def notarize(self) -> None:
        """Submit the DMG to the notary service and staple the ticket."""
        if not self.settings.notarize:
            self.log.debug("notarization not requested")
            return
        if self.dry_run:
            self.log.info(
                "[DRY RUN] Would notarize %s with profile %s and staple it",
                self.dmg,
                self.settings.keychain_profile,
            )
            return

        self._run_checked(
            ["xcrun", "notarytool", "help"],
            NotarizationError,
            "xcrun notarytool is not available, install the Xcode "
            "command line tools",
        )

        self.log.info("Submitting DMG to Apple Notary Service...")
        command = [
            "xcrun",
            "notarytool",
            "submit",
            str(self.dmg),
            "--keychain-profile",
            self.settings.keychain_profile,
            "--wait",
        ]
        with ProgressSpinner("Waiting for notarization"):
            outcome = self._run(command)
        try:
            outcome.check(command)
        except CommandError as e:
            raise NotarizationError(
                f"Notarization failed for {self.dmg}: {e.output or e}"
            ) from e

        self.log.info("Stapling notarization ticket...")
        self._run_checked(
            ["xcrun", "stapler", "staple", str(self.dmg)],
            NotarizationError,
            f"Stapling failed for {self.dmg}",
        )
        self.log.log(SUCCESS, "Notarization and stapling complete!")


# ----------------------------------------------------------------------------
# Pipeline


class RunStatus(enum.Enum):
    """How a whole pipeline run ended."""

    DONE = "done"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def exit_code(self) -> int:
        if self is RunStatus.DONE:
            return EXIT_SUCCESS
        if self is RunStatus.CANCELED:
            return EXIT_CANCELED
        return EXIT_FAILURE


class PipelineDriver:
    """Runs the bundle assembly once per build configuration.

    Configurations run one after another. The first one that fails stops
    the run: the shared cancellation event is set and no further
    configuration starts.

    Args:
        settings: Run settings
        runner: CommandRunner shared by every stage
        cancel: Cancellation event (e.g. set from a SIGINT handler)

    Example:
        status = PipelineDriver(settings).run()
        sys.exit(status.exit_code)
    """

    def __init__(
        self,
        settings: PublishSettings,
        runner: CommandRunner | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.settings = settings
        self.runner = runner or CommandRunner()
        self.cancel = cancel or threading.Event()
        self.dry_run = settings.dry_run
        self.assemblers: list[BundleAssembler] = []
        self.log = logging.getLogger(self.__class__.__name__)

    def check_tools(self) -> None:
        """Make sure the external toolchain is installed."""
        missing = [tool for tool in REQUIRED_TOOLS if shutil.which(tool) is None]
        if not missing:
            return
        if self.dry_run:
            self.log.warning(
                "Required tools not found: %s (ignored in dry run)",
                ", ".join(missing),
            )
            return
        raise ConfigurationError(f"Required tools not found: {', '.join(missing)}")

    def check_identities(self) -> None:
        """Make sure the configured identities are in the keychain."""
        wanted = [
            i
            for i in (self.settings.identity, self.settings.installer_identity)
            if i
        ]
        if not wanted:
            return
        for identity in wanted:
            validate_identity(identity)

        command = ["security", "find-identity", "-v"]
        outcome = self.runner.run(command, self.cancel)
        try:
            outcome.check(command)
        except CommandError as e:
            raise ConfigurationError(
                f"Cannot list signing identities: {e.output or e}"
            ) from e
        for identity in wanted:
            if not identity_listed(identity, outcome.stdout):
                raise ConfigurationError(
                    f"Signing identity '{identity}' not found in keychain."
                )

    def preflight(self) -> None:
        """Validate inputs before any configuration is built."""
        validate_project_file(self.settings.project_file)
        self.check_tools()
        self.check_identities()
        if self.dry_run:
            self.log.info(
                "[DRY RUN] Dry run mode enabled. No files will be generated."
            )
        else:
            self.settings.output_dir.mkdir(parents=True, exist_ok=True)

    def run(self) -> RunStatus:
        """Run every configuration and report how the run ended."""
        started = time.monotonic()
        try:
            status = self._run()
        finally:
            self.log.info(
                "Time elapsed: %.1f seconds.", time.monotonic() - started
            )
        return status

    def _run(self) -> RunStatus:
        try:
            self.preflight()
        except CanceledError:
            self.log.warning("Publishing was canceled.")
            return RunStatus.CANCELED
        except BundlerError as e:
            self.log.error("%s", e)
            return RunStatus.FAILED

        for configuration in self.settings.configurations:
            if self.cancel.is_set():
                break
            assembler = BundleAssembler(
                self.settings,
                configuration,
                runner=self.runner,
                cancel=self.cancel,
            )
            self.assemblers.append(assembler)
            if assembler.process():
                continue
            if self.cancel.is_set():
                break
            self.cancel.set()
            self.log.error(
                "%s failed, remaining configurations skipped",
                configuration.value,
            )
            return RunStatus.FAILED

        if self.cancel.is_set():
            self.log.warning("Publishing was canceled.")
            return RunStatus.CANCELED
        self.log.log(SUCCESS, "Done")
        return RunStatus.DONE


# ----------------------------------------------------------------------------
# Command-line interface


@contextlib.contextmanager
def cancel_on_interrupt(cancel: threading.Event):
    """Turn SIGINT into a cooperative cancellation request."""

    def handler(signum: int, frame: object) -> None:
        logging.getLogger("macpublish").warning(
            "Cancellation requested, stopping after in-flight work"
        )
        cancel.set()

    try:
        previous = signal.signal(signal.SIGINT, handler)
    except ValueError:
        # not the main thread
        previous = None
    try:
        yield cancel
    finally:
        if previous is not None:
            signal.signal(signal.SIGINT, previous)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="macpublish",
        description=(
            "Publish a .NET project as a universal (arm64 + x64) macOS "
            "app bundle, then sign, package and notarize it."
        ),
        epilog=(
            "Examples:\n"
            "  macpublish MyApp/MyApp.csproj\n"
            "  macpublish MyApp/MyApp.csproj --dry-run\n"
            "  macpublish MyApp.sln -c Release -o dist\n"
            "  macpublish MyApp/MyApp.csproj -i 'Developer ID Application: "
            "John Doe (ABCD123456)' --notarize AC_PROFILE\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "project",
        help="path to the .csproj or .sln file to publish",
    )
    parser.add_argument(
        "-o",
        "--output",
        metavar="DIR",
        help=f"output directory (default: {DEFAULT_OUTPUT_DIR})",
    )
    parser.add_argument(
        "--plist-dir",
        metavar="DIR",
        help="folder with Info.plist and Entitlements.plist "
        "(default: project folder)",
    )
    parser.add_argument(
        "-i",
        "--identity",
        metavar="ID",
        help=f"code signing identity (or set {ENV_SIGN_IDENTITY} env var)",
    )
    parser.add_argument(
        "--installer-identity",
        metavar="ID",
        help="installer signing identity, builds a .pkg "
        f"(or set {ENV_INSTALLER_IDENTITY} env var)",
    )
    parser.add_argument(
        "--app-version",
        metavar="VERSION",
        help="version for the build and Info.plist (default: yy.MM.dd.HHmm)",
    )
    parser.add_argument(
        "--notarize",
        nargs="?",
        const="",
        metavar="PROFILE",
        help="notarize and staple the DMG using a notarytool keychain "
        f"profile (default: {DEFAULT_KEYCHAIN_PROFILE})",
    )
    parser.add_argument(
        "-c",
        "--configuration",
        action="append",
        choices=[c.value for c in BuildConfiguration],
        help="configuration to build (repeatable, default: all)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="show what would be done without doing it",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """Command line interface for macpublish."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("macpublish")
    log.info("macpublish v%s", __version__)

    load_dotenv(find_dotenv(usecwd=True))
    cancel = threading.Event()
    try:
        settings = PublishSettings.from_args(args, load_config())
        driver = PipelineDriver(settings, cancel=cancel)
        with cancel_on_interrupt(cancel):
            status = driver.run()
    except BundlerError as e:
        log.error(str(e))
        sys.exit(EXIT_FAILURE)
    except KeyboardInterrupt:
        log.info("Interrupted by user")
        sys.exit(EXIT_CANCELED)
    except Exception as e:
        log.error("Unexpected error: %s", e)
        sys.exit(EXIT_FAILURE)

    sys.exit(status.exit_code)


if __name__ == "__main__":
    main()
