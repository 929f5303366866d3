"""Tests for BundleAssembler, the per-configuration stage machine."""

import logging
import os
import stat
import threading
from dataclasses import replace

import pytest

from macpublish import (
    PLIST_BUDDY,
    PRIMARY_ARCH,
    SECONDARY_ARCH,
    BuildConfiguration,
    BundleAssembler,
    DeduplicationError,
    Stage,
)

IDENTITY = "Developer ID Application: John Doe (ABCD123456)"
INSTALLER = "Developer ID Installer: John Doe (ABCD123456)"


def assembler_for(settings, runner, cancel=None):
    return BundleAssembler(
        settings, BuildConfiguration.RELEASE, runner=runner, cancel=cancel
    )


class TestPaths:
    """Tests for the derived output paths."""

    def test_paths(self, settings, fake_runner):
        """Test bundle, installer and disk image locations."""
        assembler = assembler_for(settings, fake_runner)
        out = settings.output_dir
        assert assembler.bundle == out / "Release" / "App.app"
        assert assembler.macos == out / "Release" / "App.app" / "Contents" / "MacOS"
        assert assembler.launcher == assembler.macos / "App.sh"
        assert assembler.pkg == out / "App-1.2.3-Release.pkg"
        assert assembler.dmg == out.parent / "App-1.2.3.dmg"


class TestHappyPath:
    """Tests for a full run with every optional step enabled."""

    @pytest.fixture
    def full_settings(self, settings, entitlements):
        return replace(
            settings,
            identity=IDENTITY,
            installer_identity=INSTALLER,
            notarize=True,
            keychain_profile="AC_PROFILE",
        )

    def test_all_stages_run(self, full_settings, fake_runner):
        """Test every stage is entered in order."""
        assembler = assembler_for(full_settings, fake_runner)
        assert assembler.process()
        assert assembler.history == [
            Stage.SKELETON,
            Stage.PUBLISH,
            Stage.DEDUPLICATE,
            Stage.PATCH_METADATA,
            Stage.SIGN,
            Stage.INSTALLER_PACKAGE,
            Stage.DISK_IMAGE,
            Stage.NOTARIZE,
            Stage.DONE,
        ]

    def test_bundle_layout(self, full_settings, fake_runner):
        """Test the bundle tree, launcher, plist and assets."""
        assembler = assembler_for(full_settings, fake_runner)
        assert assembler.process()

        macos = assembler.macos
        assert (macos / "osx-arm64" / "App").read_bytes() == b"executable for osx-arm64"
        assert (macos / "osx-x64" / "App").read_bytes() == b"executable for osx-x64"
        assert (macos / "shared" / "Common.dll").read_bytes() == b"managed assembly"
        assert (macos / "osx-arm64" / "Common.dll").is_symlink()
        assert (macos / "osx-x64" / "Common.dll").is_symlink()
        assert not (macos / "osx-arm64" / "libnative.dylib").is_symlink()
        assert (assembler.contents / "Info.plist").exists()
        assert (assembler.contents / "Resources" / "icon.icns").read_bytes() == b"icns"

    def test_launcher(self, full_settings, fake_runner):
        """Test the launcher picks the build by host architecture."""
        assembler = assembler_for(full_settings, fake_runner)
        assert assembler.process()

        launcher = assembler.launcher
        content = launcher.read_text()
        assert content.startswith("#!/bin/sh\n")
        assert "sysctl -in hw.optional.arm64" in content
        assert 'exec "$DIR/osx-arm64/App" "$@"' in content
        assert 'exec "$DIR/osx-x64/App" "$@"' in content
        assert launcher.stat().st_mode & stat.S_IXUSR

    def test_metadata_patched(self, full_settings, fake_runner):
        """Test both version keys are set in the bundled Info.plist."""
        assembler = assembler_for(full_settings, fake_runner)
        assert assembler.process()

        patches = fake_runner.commands(PLIST_BUDDY)
        assert [c[2] for c in patches] == [
            "Set :CFBundleVersion 1.2.3",
            "Set :CFBundleShortVersionString 1.2.3",
        ]
        assert all(c[3] == str(assembler.info_plist) for c in patches)

    def test_signing(self, full_settings, fake_runner):
        """Test each real file is signed, then the bundle."""
        assembler = assembler_for(full_settings, fake_runner)
        assert assembler.process()

        signs = fake_runner.commands("codesign", "--force")
        signed = [c[-1] for c in signs]
        # 2 per architecture, shared/Common.dll and the launcher
        assert len(signs) == 7
        assert signed[-1] == str(assembler.bundle)
        assert str(assembler.macos / "shared" / "Common.dll") in signed
        assert str(assembler.macos / "osx-arm64" / "Common.dll") not in signed
        assert "--entitlements" in signs[-1]
        assert fake_runner.commands("codesign", "--verify")
        assert fake_runner.commands("spctl", "--assess")

    def test_packaging_order(self, full_settings, fake_runner):
        """Test pkg, dmg, notarize and staple run in that order."""
        assembler = assembler_for(full_settings, fake_runner)
        assert assembler.process()

        programs = [
            c[:3]
            for c in fake_runner.calls
            if c[0] in ("productbuild", "hdiutil", "xcrun")
        ]
        assert programs == [
            ["productbuild", "--version", "1.2.3"],
            ["hdiutil", "create", "-volname"],
            ["xcrun", "notarytool", "help"],
            ["xcrun", "notarytool", "submit"],
            ["xcrun", "stapler", "staple"],
        ]
        submit = fake_runner.commands("xcrun", "notarytool", "submit")[0]
        assert submit[3] == str(assembler.dmg)
        assert submit[submit.index("--keychain-profile") + 1] == "AC_PROFILE"
        assert "--wait" in submit

    def test_productbuild_command(self, full_settings, fake_runner):
        """Test the installer targets /Applications with the installer identity."""
        assembler = assembler_for(full_settings, fake_runner)
        assert assembler.process()

        command = fake_runner.commands("productbuild")[0]
        assert command == [
            "productbuild",
            "--version",
            "1.2.3",
            "--component",
            str(assembler.bundle),
            "/Applications",
            str(assembler.pkg),
            "--sign",
            INSTALLER,
        ]

    def test_disk_image(self, full_settings, fake_runner):
        """Test the DMG covers the output folder; temporary files are cleaned."""
        out = full_settings.output_dir
        out.mkdir(parents=True)
        (out / ".DS_Store").write_bytes(b"finder")
        seen = {}

        def record_link(command, cancel):
            seen["link"] = os.path.islink(out / "Applications")

        fake_runner.on("hdiutil", action=record_link)
        assembler = assembler_for(full_settings, fake_runner)
        assert assembler.process()

        command = fake_runner.commands("hdiutil")[0]
        assert command[command.index("-srcfolder") + 1] == str(out)
        assert command[command.index("-format") + 1] == "UDZO"
        assert command[-1] == str(assembler.dmg)
        assert seen["link"]
        assert not os.path.lexists(out / "Applications")
        assert not (out / ".DS_Store").exists()

    def test_rebuild_replaces_old_bundle(self, full_settings, fake_runner):
        """Test stale files from an earlier run are removed."""
        assembler = assembler_for(full_settings, fake_runner)
        stale = assembler.macos / "osx-arm64" / "stale.dll"
        stale.parent.mkdir(parents=True)
        stale.write_bytes(b"old")

        assert assembler.process()
        assert not stale.exists()


class TestOptionalSteps:
    """Tests for steps that only run when configured."""

    def test_minimal_run(self, settings, fake_runner):
        """Test no signing, pkg or notarization without identities."""
        assembler = assembler_for(settings, fake_runner)
        assert assembler.process()

        programs = {c[0] for c in fake_runner.calls}
        assert programs == {"dotnet", "hdiutil"}

    def test_no_entitlements(self, settings, fake_runner):
        """Test Info.plist is not patched and the bundle is signed plainly."""
        assembler = assembler_for(replace(settings, identity=IDENTITY), fake_runner)
        assert assembler.process()

        assert fake_runner.commands(PLIST_BUDDY) == []
        bundle_sign = fake_runner.commands("codesign", "--force")[-1]
        assert "--entitlements" not in bundle_sign

    def test_no_assets(self, settings, fake_runner):
        """Test a project without an Assets folder."""
        (settings.assets_dir / "icon.icns").unlink()
        settings.assets_dir.rmdir()
        assembler = assembler_for(settings, fake_runner)
        assert assembler.process()
        assert list((assembler.contents / "Resources").iterdir()) == []

    def test_plist_dir(self, settings, fake_runner, temp_dir):
        """Test Info.plist is taken from plist_dir."""
        plist_dir = temp_dir / "plists"
        plist_dir.mkdir()
        (plist_dir / "Info.plist").write_text("<plist>custom</plist>")
        assembler = assembler_for(replace(settings, plist_dir=plist_dir), fake_runner)
        assert assembler.process()
        assert "custom" in assembler.info_plist.read_text()


class TestFailures:
    """Tests for fatal and non-fatal stage failures."""

    def test_missing_info_plist(self, settings, fake_runner):
        """Test a missing Info.plist stops before anything is deleted."""
        settings.info_plist.unlink()
        assembler = assembler_for(settings, fake_runner)
        existing = assembler.bundle
        existing.mkdir(parents=True)

        assert not assembler.process()
        assert assembler.history == [Stage.SKELETON]
        assert existing.exists()
        assert fake_runner.calls == []

    def test_publish_failure(self, settings, fake_runner, caplog):
        """Test one failing architecture fails the configuration."""
        fake_runner.on(
            "dotnet", "publish", returncode=1, stderr="restore failed"
        )
        assembler = assembler_for(settings, fake_runner)

        with caplog.at_level(logging.ERROR):
            assert not assembler.process()

        assert assembler.history == [Stage.SKELETON, Stage.PUBLISH]
        assert len(fake_runner.commands("dotnet", "publish")) == 2
        assert "restore failed" in caplog.text

    def test_metadata_failure_is_warning(
        self, settings, entitlements, fake_runner, caplog
    ):
        """Test a failed PlistBuddy call does not stop the run."""
        fake_runner.on(PLIST_BUDDY, returncode=1, stderr="Entry Does Not Exist")
        assembler = assembler_for(settings, fake_runner)

        with caplog.at_level(logging.WARNING):
            assert assembler.process()
        assert "Entry Does Not Exist" in caplog.text

    def test_deduplication_failure_is_warning(self, settings, fake_runner, caplog):
        """Test deduplication errors leave the bundle with duplicates."""
        assembler = assembler_for(settings, fake_runner)

        def fail(self):
            raise DeduplicationError("disk full")

        with caplog.at_level(logging.WARNING):
            with pytest.MonkeyPatch.context() as mp:
                mp.setattr("macpublish.Deduplicator.process", fail)
                assert assembler.process()
        assert "disk full" in caplog.text

    def test_file_signing_failure(self, settings, fake_runner):
        """Test a failed file signature stops the configuration."""
        fake_runner.on("codesign", "--force", returncode=1, stderr="no identity")
        assembler = assembler_for(replace(settings, identity=IDENTITY), fake_runner)

        assert not assembler.process()
        assert assembler.history[-1] is Stage.SIGN
        assert len(fake_runner.commands("codesign", "--force")) == 1
        assert fake_runner.commands("hdiutil") == []

    def test_verification_failure_is_warning(self, settings, fake_runner, caplog):
        """Test codesign --verify and spctl failures only warn."""
        fake_runner.on("codesign", "--verify", returncode=1, stderr="invalid")
        fake_runner.on("spctl", returncode=3, stderr="rejected")
        assembler = assembler_for(replace(settings, identity=IDENTITY), fake_runner)

        with caplog.at_level(logging.WARNING):
            assert assembler.process()
        assert "rejected" in caplog.text

    def test_productbuild_failure(self, settings, fake_runner):
        """Test a failed installer build stops before the disk image."""
        fake_runner.on("productbuild", returncode=1)
        assembler = assembler_for(
            replace(settings, installer_identity=INSTALLER), fake_runner
        )
        assert not assembler.process()
        assert assembler.history[-1] is Stage.INSTALLER_PACKAGE
        assert fake_runner.commands("hdiutil") == []

    def test_dmg_failure_removes_link(self, settings, fake_runner):
        """Test the Applications shortcut is removed even when hdiutil fails."""
        fake_runner.on("hdiutil", returncode=1, stderr="resource busy")
        assembler = assembler_for(settings, fake_runner)
        assert not assembler.process()
        assert assembler.history[-1] is Stage.DISK_IMAGE
        assert not os.path.lexists(settings.output_dir / "Applications")

    def test_existing_applications_link_kept(self, settings, fake_runner):
        """Test a shortcut this run did not create survives the DMG step."""
        out = settings.output_dir
        out.mkdir(parents=True)
        os.symlink("/Applications", out / "Applications")
        fake_runner.on("hdiutil", returncode=1, stderr="resource busy")
        assembler = assembler_for(settings, fake_runner)

        assert not assembler.process()
        assert assembler.history[-1] is Stage.DISK_IMAGE
        assert os.readlink(out / "Applications") == "/Applications"

    def test_notarytool_missing(self, settings, fake_runner):
        """Test notarization fails early without notarytool."""
        fake_runner.on("xcrun", "notarytool", "help", returncode=72)
        assembler = assembler_for(replace(settings, notarize=True), fake_runner)
        assert not assembler.process()
        assert assembler.history[-1] is Stage.NOTARIZE
        assert fake_runner.commands("xcrun", "notarytool", "submit") == []

    def test_notarization_rejected(self, settings, fake_runner):
        """Test a rejected submission is fatal and nothing is stapled."""
        fake_runner.on("xcrun", "notarytool", "submit", returncode=1)
        assembler = assembler_for(replace(settings, notarize=True), fake_runner)
        assert not assembler.process()
        assert fake_runner.commands("xcrun", "stapler") == []

    def test_staple_failure(self, settings, fake_runner):
        """Test a failed staple is fatal."""
        fake_runner.on("xcrun", "stapler", returncode=65)
        assembler = assembler_for(replace(settings, notarize=True), fake_runner)
        assert not assembler.process()
        assert Stage.DONE not in assembler.history


class TestCancellation:
    """Tests for cooperative cancellation."""

    def test_canceled_before_start(self, settings, fake_runner):
        """Test nothing happens once cancellation is requested."""
        cancel = threading.Event()
        cancel.set()
        assembler = assembler_for(settings, fake_runner, cancel)

        assert not assembler.process()
        assert assembler.history == []
        assert fake_runner.calls == []
        assert not assembler.bundle.exists()

    def test_canceled_during_publish(self, settings, fake_runner):
        """Test cancellation during publishing stops before deduplication."""
        cancel = threading.Event()

        def publish_then_cancel(command, cancel_event):
            cancel.set()

        fake_runner.on("dotnet", "publish", action=publish_then_cancel)
        assembler = assembler_for(settings, fake_runner, cancel)

        assert not assembler.process()
        assert assembler.history[-1] is Stage.PUBLISH
        assert fake_runner.commands("hdiutil") == []
        assert list(assembler.shared.glob("*")) == []
        for architecture in (PRIMARY_ARCH, SECONDARY_ARCH):
            tree = assembler.arch_dir(architecture)
            assert [p for p in tree.rglob("*") if p.is_symlink()] == []

    def test_canceled_during_signing(self, settings, fake_runner):
        """Test signing stops between files."""
        cancel = threading.Event()

        def sign_then_cancel(command, cancel_event):
            cancel.set()

        fake_runner.on("codesign", "--force", action=sign_then_cancel)
        assembler = assembler_for(
            replace(settings, identity=IDENTITY), fake_runner, cancel
        )

        assert not assembler.process()
        assert len(fake_runner.commands("codesign", "--force")) == 1
        assert assembler.history[-1] is Stage.SIGN


class TestDryRun:
    """Tests for dry-run assembly."""

    def test_dry_run_changes_nothing(self, settings, fake_runner, entitlements):
        """Test dry run runs no commands and writes no files."""
        dry = replace(
            settings,
            dry_run=True,
            identity=IDENTITY,
            installer_identity=INSTALLER,
            notarize=True,
        )
        assembler = assembler_for(dry, fake_runner)

        assert assembler.process()
        assert fake_runner.calls == []
        assert not settings.output_dir.exists()
        assert assembler.history[-1] is Stage.DONE
