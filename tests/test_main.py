"""Tests for the command line entry point."""

from unittest.mock import Mock

import pytest

from silicon_dualboot import main as main_module
from silicon_dualboot.__version__ import __version__
from silicon_dualboot.app.context import AppContext
from silicon_dualboot.domain import InstallMode, InstallStep, SessionState
from silicon_dualboot.storage.exceptions import (
    DeviceNotFoundError,
    PrivilegeError,
    ResumeNotPossibleError,
    SystemPartitionProtectedError,
    UserDeclinedError,
    VerificationFailure,
)


class TestBuildParser:
    """Tests for build_parser()."""

    def test_defaults(self):
        args = main_module.build_parser().parse_args([])

        assert args.skip_checks is False
        assert args.configure_only is False
        assert args.use_existing is None
        assert args.size is None
        assert args.image is None

    def test_use_existing_with_and_without_id(self):
        parser = main_module.build_parser()

        assert parser.parse_args(["--use-existing", "disk0s5"]).use_existing == "disk0s5"
        assert parser.parse_args(["--use-existing"]).use_existing == ""

    def test_size_is_float(self):
        assert main_module.build_parser().parse_args(["--size", "42.5"]).size == 42.5

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main_module.build_parser().parse_args(["--version"])

        assert excinfo.value.code == 0
        assert __version__ in capsys.readouterr().out


@pytest.fixture
def entry_point(mocker, tmp_path):
    """Patch everything main() touches outside run()."""
    mocker.patch.object(main_module, "setup_logging", return_value=tmp_path / "run.log")
    mocker.patch.object(main_module.signal, "signal")
    mocker.patch.object(main_module.sys, "stdin", Mock(isatty=Mock(return_value=False)))
    registry = mocker.patch.object(main_module, "mount_registry")
    registry.unmount_all.return_value = []
    context_cls = mocker.patch.object(main_module, "AppContext")
    run = mocker.patch.object(main_module, "run", return_value=0)
    return Mock(registry=registry, context_cls=context_cls, run=run)


class TestMain:
    """Tests for main() exit codes and cleanup."""

    def test_success(self, entry_point, tmp_path):
        assert main_module.main(["--work-dir", str(tmp_path / "work")]) == 0

        kwargs = entry_point.context_cls.call_args.kwargs
        assert kwargs["work_dir"] == tmp_path / "work"
        assert kwargs["profile"].key == "kali"
        entry_point.registry.unmount_all.assert_called_once()

    def test_declined_exits_zero(self, entry_point):
        entry_point.run.side_effect = UserDeclinedError("Format disk0s5")

        assert main_module.main([]) == 0
        entry_point.registry.unmount_all.assert_called_once()

    def test_installer_error_exits_one(self, entry_point, capsys, tmp_path):
        entry_point.run.side_effect = ResumeNotPossibleError("No saved install session was found")

        assert main_module.main([]) == 1

        out = capsys.readouterr().out
        assert "No saved install session was found" in out
        assert str(tmp_path / "run.log") in out

    def test_interrupt_points_at_resume(self, entry_point, capsys):
        entry_point.run.side_effect = KeyboardInterrupt

        assert main_module.main([]) == 1

        assert "Run the installer again to resume" in capsys.readouterr().out
        entry_point.registry.unmount_all.assert_called_once()

    def test_missing_privileges_without_tty(self, entry_point, mocker, capsys):
        entry_point.run.side_effect = PrivilegeError("sudo silicon-dualboot")
        reexec = mocker.patch.object(main_module.preflight, "reexec_with_sudo")

        assert main_module.main([]) == 1

        reexec.assert_not_called()
        assert "sudo silicon-dualboot" in capsys.readouterr().out

    def test_unknown_profile(self, entry_point):
        assert main_module.main(["--profile", "gentoo"]) == 1
        entry_point.run.assert_not_called()

    def test_reports_volumes_left_mounted(self, entry_point, capsys):
        entry_point.registry.unmount_all.return_value = ["disk0s1"]

        main_module.main([])

        assert "Could not unmount: disk0s1" in capsys.readouterr().out

    @pytest.mark.parametrize(
        "error",
        [
            OSError(28, "No space left on device"),
            FileNotFoundError(2, "No such file or directory", "diskutil"),
        ],
    )
    def test_unexpected_error_points_at_log(self, entry_point, capsys, tmp_path, error):
        entry_point.run.side_effect = error

        assert main_module.main(["--work-dir", str(tmp_path / "work")]) == 1

        out = capsys.readouterr().out
        assert "Unexpected error" in out
        assert str(tmp_path / "work") in out
        assert str(tmp_path / "run.log") in out
        entry_point.registry.unmount_all.assert_called_once()

    def test_closed_stdin_exits_one(self, entry_point, capsys, tmp_path):
        entry_point.run.side_effect = EOFError

        assert main_module.main([]) == 1

        out = capsys.readouterr().out
        assert "standard input was closed" in out
        assert str(tmp_path / "run.log") in out


class TestRun:
    """Tests for run() with a real context on fake disks."""

    @pytest.fixture
    def make_context(self, test_profile, fake_diskutil, registry, scripted_prompter, tmp_path):
        def factory(**answers):
            return AppContext(
                profile=test_profile,
                work_dir=tmp_path / "work",
                log_path=tmp_path / "run.log",
                prompter=scripted_prompter(**answers),
                diskutil=fake_diskutil,
                registry=registry,
            )

        return factory

    @pytest.fixture
    def preflight(self, mocker):
        return mocker.patch.object(main_module.preflight, "run_preflight")

    @pytest.fixture
    def image(self, tmp_path):
        path = tmp_path / "testos-arm64.iso"
        path.write_bytes(b"image")
        return path

    def _finish(self, context, mocker):
        """Stop the executor at run() and mark the state complete."""
        return mocker.patch.object(
            context.executor, "run", side_effect=lambda state: SessionState(step=InstallStep.COMPLETE, plan=state.plan)
        )

    def test_install_onto_existing_partition(self, make_context, preflight, mocker, image):
        context = make_context(yesno=[True], text=["disk0s4"])
        mocker.patch.object(context.executor, "obtain_image", return_value=(image, None))
        finish = self._finish(context, mocker)
        args = main_module.build_parser().parse_args(["--use-existing", "disk0s4", "--image", str(image)])

        assert main_module.run(context, args, []) == 0

        assert preflight.call_args.kwargs["network_host"] is None
        state = finish.call_args[0][0]
        assert state.plan.mode is InstallMode.USE_EXISTING
        assert state.plan.target_partition == "disk0s4"
        assert state.plan.image_source == str(image)
        assert context.store.load().step is InstallStep.PLANNED

    def test_new_partition_with_size(self, make_context, preflight, mocker, image, fake_diskutil):
        context = make_context(yesno=[True], text=["disk0s4"])
        obtain = mocker.patch.object(context.executor, "obtain_image", return_value=(image, None))
        finish = self._finish(context, mocker)
        args = main_module.build_parser().parse_args(["--size", "40"])

        main_module.run(context, args, [])

        obtain.assert_called_once_with(context.profile.image_url)
        assert finish.call_args[0][0].plan.image_source == context.profile.image_url
        assert preflight.call_args.kwargs["network_host"] == "cdimage.kali.org"
        assert ("addPartition", "disk0s4", "FAT32", "TESTOS", "40g") in fake_diskutil.actions
        assert finish.call_args[0][0].plan.target_partition == "disk0s5"

    def test_image_is_verified_before_partitioning(self, make_context, preflight, mocker, fake_diskutil):
        context = make_context(yesno=[True], text=["disk0s4"])
        mocker.patch.object(
            context.executor, "obtain_image", side_effect=VerificationFailure("testos-arm64.iso", "checksum mismatch")
        )
        args = main_module.build_parser().parse_args(["--size", "40"])

        with pytest.raises(VerificationFailure):
            main_module.run(context, args, [])

        assert fake_diskutil.actions == []

    @pytest.mark.parametrize(
        "identifier, error", [("disk0s1", SystemPartitionProtectedError), ("disk9s9", DeviceNotFoundError)]
    )
    def test_bad_identifier_is_rejected_before_download(
        self, make_context, preflight, mocker, fake_diskutil, identifier, error
    ):
        context = make_context()
        obtain = mocker.patch.object(context.executor, "obtain_image")
        args = main_module.build_parser().parse_args(["--use-existing", identifier])

        with pytest.raises(error):
            main_module.run(context, args, [])

        obtain.assert_not_called()
        assert fake_diskutil.actions == []

    def test_prints_next_steps(self, make_context, preflight, mocker, image, capsys):
        context = make_context(yesno=[True], text=["disk0s4"])
        mocker.patch.object(context.executor, "obtain_image", return_value=(image, None))
        self._finish(context, mocker)
        args = main_module.build_parser().parse_args(["--use-existing", "disk0s4", "--image", str(image)])

        main_module.run(context, args, [])

        out = capsys.readouterr().out
        assert "Next steps:" in out
        assert "'Test OS'" in out
        assert "Recovery Mode" not in out

    def test_configure_only(self, make_context, preflight, mocker, confirmed_plan):
        context = make_context()
        configure = mocker.patch.object(
            context.executor,
            "configure_only",
            return_value=SessionState(step=InstallStep.COMPLETE, plan=confirmed_plan),
        )
        args = main_module.build_parser().parse_args(["--configure-only"])

        assert main_module.run(context, args, []) == 0

        configure.assert_called_once_with(None)

    def test_resumes_saved_session(self, make_context, preflight, mocker, confirmed_plan):
        context = make_context(yesno=[True])
        context.store.save(SessionState(step=InstallStep.FORMATTED, plan=confirmed_plan))
        resume = mocker.patch.object(
            context.executor, "resume", return_value=SessionState(step=InstallStep.COMPLETE, plan=confirmed_plan)
        )
        obtain = mocker.patch.object(context.executor, "obtain_image")
        args = main_module.build_parser().parse_args([])

        main_module.run(context, args, [])

        assert resume.call_args[0][0].step is InstallStep.FORMATTED
        obtain.assert_not_called()

    def test_declined_resume_starts_over(self, make_context, preflight, mocker, confirmed_plan, image):
        context = make_context(yesno=[False, True], text=["disk0s4"])
        context.store.save(SessionState(step=InstallStep.FORMATTED, plan=confirmed_plan))
        resume = mocker.patch.object(context.executor, "resume")
        mocker.patch.object(context.executor, "obtain_image", return_value=(image, None))
        self._finish(context, mocker)
        args = main_module.build_parser().parse_args(["--use-existing", "disk0s4"])

        main_module.run(context, args, [])

        resume.assert_not_called()
        assert context.store.load().step is InstallStep.PLANNED
