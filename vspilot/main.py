# vspilot/main.py
import argparse
import asyncio
import logging
import platform
import sys
from pathlib import Path
from typing import List, Optional

from .core.ai_router import AIProviderRouter
from .core.automation_service import AutomationService, answer_prompt
from .core.build_orchestrator import BuildOrchestrator
from .core.config_manager import ConfigManager, VSPilotSettings
from .core.copilot_client import CopilotDetector
from .core.file_system_manager import FileSystemManager
from .core.metrics_tracker import MetricsTracker
from .core.performance_monitor import performance_monitor
from .core.project_models import BuildCompletedInfo, ProgressInfo
from .core.remediation_manager import LineReplacementFixApplier, RemediationManager
from .core.task_scheduler import TaskScheduler
from .core.workspace import ProcessWorkspace

# --- Logging Configuration ---
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] - %(message)s'  # Include thread name

logger = logging.getLogger(__name__)


def configure_logging(settings: VSPilotSettings, verbose: bool = False) -> None:
    level = logging.DEBUG if (verbose or settings.show_detailed_logs) else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stdout)
    # Reduce verbosity of HTTP libraries.
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vspilot", description="Build automation with AI-assisted error repair.")
    parser.add_argument("--config", help="Path to the settings JSON file.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    build = subparsers.add_parser("build", help="Clean, build and repair a project.")
    build.add_argument("project_dir", help="Root directory of the project.")
    build.add_argument("--build-cmd", required=True, help="Build command. '{project}' is replaced per project.")
    build.add_argument("--clean-cmd", help="Clean command.")
    build.add_argument("--test-cmd", help="Test command, run after a successful build.")
    build.add_argument("--project", action="append", dest="projects", help="Project name (repeatable).")
    build.add_argument("--apply-fixes", action="store_true", help="Write AI suggested fixes into the sources.")
    build.add_argument("--no-fix", action="store_true", help="Disable the automatic repair loop.")

    chat = subparsers.add_parser("chat", help="Send a prompt to the configured AI provider.")
    chat.add_argument("prompt", nargs="+", help="The prompt text.")
    return parser


def _print_progress(entry_id: str, info: ProgressInfo) -> None:
    detail = f" - {info.detail}" if info.detail else ""
    print(f"[{info.stage}] {info.progress:5.1f}%{detail}")


def _print_completion(info: BuildCompletedInfo) -> None:
    print(info.summary)


def run_build(args: argparse.Namespace, config_manager: ConfigManager, settings: VSPilotSettings) -> int:
    project_root = Path(args.project_dir).resolve()
    if args.no_fix:
        settings = settings.model_copy(update={"auto_fix_errors": False})

    file_manager = FileSystemManager(project_root)
    workspace = ProcessWorkspace(
        project_root, args.build_cmd, clean_command=args.clean_cmd, test_command=args.test_cmd,
        project_names=args.projects, file_manager=file_manager,
    )
    metrics = MetricsTracker(settings.metrics_file) if settings.metrics_file else None
    router = AIProviderRouter(settings=settings, config_manager=config_manager, copilot_detector=CopilotDetector())
    fix_applier = LineReplacementFixApplier(file_manager) if args.apply_fixes else None
    remediation = RemediationManager(router, file_manager=file_manager, fix_applier=fix_applier, metrics=metrics)
    orchestrator = BuildOrchestrator(workspace, remediation=remediation, settings=settings,
                                     on_build_completed=_print_completion, metrics=metrics)
    scheduler = TaskScheduler(on_progress=_print_progress, poll_interval=settings.scheduler_poll_interval)
    service = AutomationService(scheduler, orchestrator, router, settings=settings)

    entry_id = service.submit_build(run_tests=bool(args.test_cmd))
    try:
        service.wait_until_idle()
    except KeyboardInterrupt:
        logger.warning("Interrupted. Cancelling build...")
        service.cancel(entry_id)
        service.wait_until_idle(timeout=30)
    finally:
        service.shutdown(wait=True, timeout=5)
        performance_monitor.log_report()
    return 0 if service.get_result(entry_id) else 1


def run_chat(args: argparse.Namespace, config_manager: ConfigManager, settings: VSPilotSettings) -> int:
    router = AIProviderRouter(settings=settings, config_manager=config_manager, copilot_detector=CopilotDetector())
    response = asyncio.run(answer_prompt(router, " ".join(args.prompt)))
    print(response)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point of the `vspilot` command."""
    args = build_parser().parse_args(argv)
    config_manager = ConfigManager(args.config)
    settings = config_manager.load_settings()
    configure_logging(settings, args.verbose)

    logger.info("=" * 60)
    logger.info("Starting VSPilot...")
    logger.info(f"Python Version: {sys.version}")
    logger.info(f"Platform: {platform.system()} ({platform.release()}) - {platform.machine()}")
    logger.info("=" * 60)

    try:
        if args.command == "build":
            return run_build(args, config_manager, settings)
        return run_chat(args, config_manager, settings)
    except (ValueError, RuntimeError) as e:
        logger.error(f"VSPilot failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
