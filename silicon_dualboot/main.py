import argparse
import signal
import sys
from pathlib import Path

from silicon_dualboot.__version__ import __version__
from silicon_dualboot.app.context import AppContext
from silicon_dualboot.config import settings
from silicon_dualboot.domain import InstallStep
from silicon_dualboot.logging import LoggerFactory, setup_logging
from silicon_dualboot.profiles import get_profile
from silicon_dualboot.services import planner as partition_planner
from silicon_dualboot.services import preflight
from silicon_dualboot.storage.exceptions import (
    InstallerError,
    PrivilegeError,
    UserDeclinedError,
)
from silicon_dualboot.storage.mount import mount_registry
from silicon_dualboot.ui import console

log = LoggerFactory.for_system()


def build_parser():
    parser = argparse.ArgumentParser(
        prog="silicon-dualboot",
        description="Install a Linux distribution next to macOS on Apple Silicon",
    )
    parser.add_argument(
        "--skip-checks", action="store_true", help="Skip system requirement checks (privileges are still checked)"
    )
    parser.add_argument(
        "--configure-only",
        action="store_true",
        help="Only configure the boot manager for an already written partition",
    )
    parser.add_argument(
        "--use-existing",
        nargs="?",
        const="",
        metavar="ID",
        help="Install onto an existing partition (e.g. disk0s5); prompts when ID is omitted",
    )
    parser.add_argument("--size", type=float, metavar="GB", help="Size of the new partition in GB")
    parser.add_argument("--image", metavar="URL_OR_PATH", help="Image URL or local file to install")
    parser.add_argument("--profile", metavar="NAME", help="Operating system profile (default: kali)")
    parser.add_argument("--work-dir", metavar="DIR", help="Directory for downloads and session state")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt


def _print_banner(context: AppContext) -> None:
    console.p_message(f"{context.profile.display_name} dual-boot installer for Apple Silicon Macs")
    console.p_warning("This tool erases partitions. Back up your data before continuing.")
    console.p_plain()


def _print_next_steps(context: AppContext, partition: str) -> None:
    name = context.profile.display_name
    console.p_plain()
    console.p_success(f"{name} is installed on {partition}.")
    console.p_plain()
    console.p_message("Next steps:")
    console.p_plain("  1. Shut down the Mac.")
    console.p_plain("  2. Press and hold the power button until the startup options appear.")
    console.p_plain(f"  3. Choose rEFInd, then '{context.profile.boot_entry.title}' from its menu.")
    if context.profile.boot_entry.recovery_options:
        console.p_plain("     The 'Recovery Mode' submenu boots to single-user mode.")
    console.p_plain()
    console.p_warning("Linux support on Apple Silicon is experimental. Some hardware may not work.")
    console.p_info("Boot macOS from time to time so it can install firmware updates.")
    console.p_info(f"Log file: {context.log_path}")


def _offer_resume(context: AppContext):
    """Return the saved session if the user wants to continue it."""
    state = context.store.load()
    if state is None or state.plan is None or state.step is InstallStep.COMPLETE:
        return None
    step = state.failed_step if state.step is InstallStep.FAILED else state.step
    status = "failed at" if state.step is InstallStep.FAILED else "stopped after"
    console.p_info(
        f"Found an unfinished install onto {state.plan.target_partition} ({status} {step.value})."
    )
    if context.gate.ask("Resume it?", default=True):
        return state
    context.store.clear()
    return None


def _plan(context: AppContext, args, image_source: str):
    planner = context.planner
    if args.use_existing is not None:
        identifier = args.use_existing or partition_planner.choose_partition(
            context.prompter, context.inventory.refresh()
        )
        return planner.plan_existing(identifier, image_source)

    source = planner.find_space()
    if args.size is not None:
        size = args.size
    else:
        size = partition_planner.choose_size(context.prompter, planner, source)
    return planner.plan_new(size, image_source, source)


def run(context: AppContext, args, argv) -> int:
    _print_banner(context)
    preflight.run_preflight(
        context.work_dir,
        context.gate.ask,
        network_host=None if args.image and Path(args.image).exists() else settings.get_setting("network_check_host"),
        skip_checks=args.skip_checks,
        argv=argv,
    )
    executor = context.executor

    if args.configure_only:
        state = executor.configure_only(context.store.load())
    else:
        state = _offer_resume(context)
        if state is not None:
            state = executor.resume(state)
        else:
            image_source = args.image or context.profile.image_url
            if args.use_existing:
                # Reject a bad identifier before spending time on the download.
                context.planner.validate_existing(args.use_existing)
            image, manifest = executor.obtain_image(image_source)
            plan = _plan(context, args, image_source)
            state = executor.start(plan, context.log_path, image, manifest)
            state = executor.run(state)

    _print_next_steps(context, state.plan.target_partition)
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    argv = list(sys.argv[1:] if argv is None else argv)

    log_path = setup_logging(debug=args.debug)
    log.info(f"silicon-dualboot {__version__} started with arguments: {argv}")
    signal.signal(signal.SIGTERM, _raise_interrupt)

    work_dir = Path(args.work_dir or settings.get_setting("work_dir")).expanduser()
    context = None
    try:
        profile = get_profile(args.profile)
        context = AppContext(profile=profile, work_dir=work_dir, log_path=log_path)
        return run(context, args, argv)
    except UserDeclinedError as error:
        console.p_warning(f"Aborted: {error}")
        return error.exit_code
    except PrivilegeError as error:
        console.p_error(str(error))
        if sys.stdin.isatty() and context is not None:
            if context.gate.ask("Re-run with sudo now?", default=True):
                mount_registry.unmount_all()
                preflight.reexec_with_sudo(argv)
        console.p_info(f"Log file: {log_path}")
        return error.exit_code
    except InstallerError as error:
        log.exception(f"Installer failed: {error}")
        console.p_error(str(error))
        console.p_info(f"Session state: {work_dir}")
        console.p_info(f"Log file: {log_path}")
        return error.exit_code
    except EOFError:
        log.warning("Standard input closed while waiting for an answer")
        console.p_plain()
        console.p_error("No more input: standard input was closed while waiting for an answer.")
        console.p_info(f"Session state: {work_dir}")
        console.p_info(f"Log file: {log_path}")
        return 1
    except KeyboardInterrupt:
        console.p_plain()
        console.p_warning("Interrupted.")
        console.p_info(f"Progress was saved in {work_dir}. Run the installer again to resume.")
        console.p_info(f"Log file: {log_path}")
        return 1
    except Exception as error:
        log.exception(f"Unexpected error: {error}")
        console.p_error(f"Unexpected error: {error}")
        console.p_info(f"Session state: {work_dir}")
        console.p_info(f"Log file: {log_path}")
        return 1
    finally:
        failed = mount_registry.unmount_all()
        if failed:
            console.p_warning(f"Could not unmount: {', '.join(failed)}")


if __name__ == "__main__":
    sys.exit(main())
