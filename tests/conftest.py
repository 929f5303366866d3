"""Shared fixtures: a recording command runner and a sample .NET project."""

import tempfile
import threading
from pathlib import Path

import pytest

from macpublish import CommandOutcome, PublishSettings

INFO_PLIST_XML = """\
<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
    <key>CFBundleExecutable</key>
    <string>App.sh</string>
    <key>CFBundleVersion</key>
    <string>1.0</string>
</dict>
</plist>
"""

ENTITLEMENTS_XML = """\
<?xml version="1.0" encoding="UTF-8"?>
<plist version="1.0">
<dict>
    <key>com.apple.security.cs.allow-jit</key>
    <true/>
</dict>
</plist>
"""


class FakeRunner:
    """Stands in for CommandRunner: records commands, answers from rules.

    Rules match on a command prefix; the most recently added matching rule
    wins. Unmatched commands succeed with empty output.
    """

    def __init__(self):
        self.calls: list[list[str]] = []
        self.rules: list[tuple] = []
        self._lock = threading.Lock()

    def on(self, *prefix, returncode=0, stdout="", stderr="", action=None):
        self.rules.append((prefix, returncode, stdout, stderr, action))
        return self

    def run(self, command, cancel=None, cwd=None):
        with self._lock:
            self.calls.append(list(command))
        if cancel is not None and cancel.is_set():
            return CommandOutcome(-1, canceled=True)
        for prefix, returncode, stdout, stderr, action in reversed(self.rules):
            if tuple(command[: len(prefix)]) != prefix:
                continue
            if action is not None:
                result = action(command, cancel)
                if isinstance(result, CommandOutcome):
                    return result
            return CommandOutcome(returncode, stdout, stderr)
        return CommandOutcome(0)

    def commands(self, *prefix):
        """Recorded commands starting with prefix, in call order."""
        return [c for c in self.calls if tuple(c[: len(prefix)]) == prefix]


def option_value(command, option):
    return command[command.index(option) + 1]


def fake_dotnet_publish(command, cancel):
    """Write a small self-contained build into the --output folder."""
    output = Path(option_value(command, "--output"))
    rid = option_value(command, "--runtime")
    output.mkdir(parents=True, exist_ok=True)
    (output / "App").write_bytes(f"executable for {rid}".encode())
    (output / "Common.dll").write_bytes(b"managed assembly")
    (output / "libnative.dylib").write_bytes(f"native for {rid}".encode())


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname)


@pytest.fixture
def fake_runner():
    """A FakeRunner whose `dotnet publish` produces build output."""
    runner = FakeRunner()
    runner.on("dotnet", "publish", action=fake_dotnet_publish)
    return runner


@pytest.fixture
def project(temp_dir):
    """A project folder with App.csproj, Info.plist and an Assets folder."""
    project_dir = temp_dir / "App"
    project_dir.mkdir()
    project_file = project_dir / "App.csproj"
    project_file.write_text('<Project Sdk="Microsoft.NET.Sdk"></Project>\n')
    (project_dir / "Info.plist").write_text(INFO_PLIST_XML)
    assets = project_dir / "Assets"
    assets.mkdir()
    (assets / "icon.icns").write_bytes(b"icns")
    return project_file


@pytest.fixture
def entitlements(project):
    """Add an Entitlements.plist next to the project's Info.plist."""
    path = project.parent / "Entitlements.plist"
    path.write_text(ENTITLEMENTS_XML)
    return path


@pytest.fixture
def settings(project, temp_dir):
    """Settings publishing the sample project into temp_dir/out."""
    return PublishSettings(
        project_file=project,
        output_dir=temp_dir / "out",
        version="1.2.3",
    )


@pytest.fixture
def bare_runner():
    """A FakeRunner where every command succeeds without side effects."""
    return FakeRunner()


@pytest.fixture
def dotnet_publish():
    """The build action used by fake_runner, for rules that wrap it."""
    return fake_dotnet_publish
