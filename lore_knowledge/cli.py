"""Command-line interface for the lore ingestion and sync engine."""

import argparse
import json
import os
import sys
import time
from pathlib import Path

from lore_knowledge._config import ConfigManager, SyncSource, SyncSourceConfig
from lore_knowledge._logging import configure_cli_logging
from lore_knowledge.errors import ConfigError
from lore_knowledge.output import (
    console,
    create_sources_table,
    print_daemon_status,
    print_error,
    print_header,
    print_success,
    print_sync_result,
    print_warning,
)

try:
    import argcomplete

    ARGCOMPLETE_AVAILABLE = True
except ImportError:
    ARGCOMPLETE_AVAILABLE = False


def _add_data_dir(parser: argparse.ArgumentParser, completer=None) -> None:
    action = parser.add_argument(
        "-d",
        "--data-dir",
        default=argparse.SUPPRESS,
        help="Data directory (default: $LORE_DATA_DIR, config.json, ~/lore-data)",
    )
    if completer:
        action.completer = completer


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="lore",
        description="Ingest local documents into a git-synced knowledge repository",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show debug logging",
    )
    parser.set_defaults(data_dir=None)
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Import completers if argcomplete is available
    source_completer = None
    data_dir_completer = None

    if ARGCOMPLETE_AVAILABLE:
        from lore_knowledge.completions import (
            get_data_dir_completer,
            get_source_name_completer,
        )

        source_completer = get_source_name_completer()
        data_dir_completer = get_data_dir_completer()

    # sync command
    sync_parser = subparsers.add_parser(
        "sync",
        help="Sync the knowledge repository (or manage the daemon and sources)",
    )
    _add_data_dir(sync_parser, data_dir_completer)
    sync_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be synced without processing",
    )
    sync_parser.add_argument(
        "--legacy",
        action="store_true",
        help="Only run the disk scan, skip source discovery",
    )
    sync_parser.add_argument(
        "--no-git",
        action="store_true",
        help="Skip git pull and push",
    )
    sync_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the result as JSON",
    )
    sync_sub = sync_parser.add_subparsers(dest="sync_command")

    start_parser = sync_sub.add_parser("start", help="Start background sync daemon")
    _add_data_dir(start_parser, data_dir_completer)
    sync_sub.add_parser("stop", help="Stop background sync daemon")
    restart_parser = sync_sub.add_parser("restart", help="Restart background sync daemon")
    _add_data_dir(restart_parser, data_dir_completer)
    sync_sub.add_parser("status", help="Check sync daemon status")

    logs_parser = sync_sub.add_parser("logs", help="View sync daemon logs")
    logs_parser.add_argument(
        "-n",
        "--lines",
        type=int,
        default=50,
        help="Number of lines to show (default: 50)",
    )
    logs_parser.add_argument(
        "-f",
        "--follow",
        action="store_true",
        help="Follow log output (like tail -f)",
    )

    watch_parser = sync_sub.add_parser(
        "watch",
        help="Watch source directories and sync in the foreground",
    )
    _add_data_dir(watch_parser, data_dir_completer)
    watch_parser.add_argument(
        "--interval",
        type=float,
        default=2.0,
        help="Debounce interval in seconds (default: 2)",
    )
    watch_parser.add_argument(
        "--no-initial",
        action="store_true",
        help="Skip initial sync on startup",
    )

    sync_sub.add_parser("list", help="List configured sync sources")

    add_parser = sync_sub.add_parser("add", help="Add a sync source directory")
    add_parser.add_argument("-n", "--name", help="Source name")
    add_parser.add_argument("-p", "--path", help="Directory path")
    add_parser.add_argument("-g", "--glob", help="File glob pattern (default: **/*)")
    add_parser.add_argument("--project", help="Project for files from this source")

    for verb, help_text in (
        ("enable", "Enable a sync source"),
        ("disable", "Disable a sync source"),
        ("remove", "Remove a sync source"),
    ):
        verb_parser = sync_sub.add_parser(verb, help=help_text)
        name_arg = verb_parser.add_argument("name", help="Source name")
        if source_completer:
            name_arg.completer = source_completer

    # init command
    init_parser = subparsers.add_parser(
        "init",
        help="Create a data repository and remember it as the data directory",
    )
    init_parser.add_argument(
        "path",
        nargs="?",
        help="Data directory to create (default: configured data directory)",
    )

    # paths command
    paths_parser = subparsers.add_parser("paths", help="Manage the source path index")
    _add_data_dir(paths_parser, data_dir_completer)
    paths_sub = paths_parser.add_subparsers(dest="paths_command")
    paths_sub.add_parser("rebuild", help="Rebuild sources/.paths.json from disk")

    # blocklist command
    blocklist_parser = subparsers.add_parser(
        "blocklist",
        help="Manage content hashes that are never re-ingested",
    )
    _add_data_dir(blocklist_parser, data_dir_completer)
    blocklist_sub = blocklist_parser.add_subparsers(dest="blocklist_command")
    blocklist_sub.add_parser("list", help="List blocked content hashes")
    block_add = blocklist_sub.add_parser("add", help="Block one or more content hashes")
    block_add.add_argument("hashes", nargs="+", help="sha256 content hashes")
    block_remove = blocklist_sub.add_parser("remove", help="Unblock a content hash")
    block_remove.add_argument("hash", help="sha256 content hash")

    # completions command
    completions_parser = subparsers.add_parser(
        "completions",
        help="Print shell completion setup",
    )
    completions_parser.add_argument(
        "shell",
        choices=["bash", "zsh", "fish"],
        help="Shell type",
    )

    return parser


def _data_dir(args: argparse.Namespace, config: ConfigManager) -> Path:
    return config.get_data_dir(args.data_dir)


def _concurrency(config: ConfigManager) -> int | None:
    value = config.load_config().get("concurrency")
    return value if isinstance(value, int) and value > 0 else None


def cmd_sync(args: argparse.Namespace, config: ConfigManager) -> int:
    """Handle a one-time sync."""
    from lore_knowledge.orchestrator import SyncOptions, build_orchestrator

    data_dir = _data_dir(args, config)
    options = SyncOptions(
        git_pull=not args.no_git,
        git_push=not args.no_git,
        dry_run=args.dry_run,
        use_legacy=args.legacy,
    )
    concurrency = _concurrency(config)
    if concurrency:
        options.concurrency = concurrency

    orchestrator = build_orchestrator(config, data_dir)

    if args.json:
        result = orchestrator.run(options)
        print(json.dumps(result.to_dict(), indent=2))
        return 0

    print_header("Lore Sync")
    console.print(f"Data dir: {data_dir}", highlight=False)
    if args.dry_run:
        console.print("Mode: [yellow]DRY RUN[/yellow]")

    with console.status("Syncing...") as status:
        result = orchestrator.run(
            options, on_progress=lambda _percent, message: status.update(message)
        )

    print_sync_result(result)
    console.print()
    print_success("Sync complete!")
    return 0


def cmd_daemon(args: argparse.Namespace, config: ConfigManager) -> int:
    """Handle sync start, stop, restart and status."""
    from lore_knowledge.daemon import (
        get_pid,
        is_daemon_running,
        log_file_path,
        read_status,
        restart_daemon,
        start_daemon_process,
        stop_daemon,
    )

    config_dir = config.base_path
    log_file = log_file_path(config_dir)

    def report_already_running(pid: int | None) -> int:
        console.print(f"Daemon already running (PID: {pid})")
        console.print('Use "lore sync status" to check status')
        console.print('Use "lore sync stop" to stop it')
        return 0

    if args.sync_command == "start":
        from lore_knowledge.data_repo import get_git_remote_url

        if is_daemon_running(config_dir):
            return report_already_running(get_pid(config_dir))
        data_dir = _data_dir(args, config)
        remote = get_git_remote_url(data_dir)
        if remote and (remote.startswith("git@") or remote.startswith("ssh://")):
            print_warning(f"Warning: Git remote uses SSH ({remote}).")
            console.print("[dim]The background daemon may not have SSH agent access.[/dim]")
        result = start_daemon_process(data_dir, config_dir)
        if result is None:
            print_error("Failed to start daemon - check logs with: lore sync logs")
            return 1
        if result.already_running:
            return report_already_running(result.pid)
        print_success(f"Daemon started (PID: {result.pid})")
        console.print(f"Log file: {log_file}", highlight=False)
        return 0

    if args.sync_command == "stop":
        pid = stop_daemon(config_dir)
        if pid is None:
            console.print("Daemon is not running")
            return 0
        print_success(f"Daemon stopped (PID: {pid})")
        return 0

    if args.sync_command == "restart":
        result = restart_daemon(_data_dir(args, config), config_dir)
        if result is None:
            print_error("Failed to restart daemon - check logs with: lore sync logs")
            return 1
        print_success(f"Daemon restarted (PID: {result.pid})")
        return 0

    if not is_daemon_running(config_dir):
        print_daemon_status(None, None, log_file)
        return 0
    print_daemon_status(get_pid(config_dir), read_status(config_dir), log_file)
    return 0


def cmd_logs(args: argparse.Namespace, config: ConfigManager) -> int:
    """Handle sync logs."""
    from lore_knowledge.daemon import log_file_path, tail_log

    log_file = log_file_path(config.base_path)
    if not log_file.exists():
        console.print("No log file found. Daemon may not have run yet.")
        console.print(f"Expected: {log_file}", highlight=False)
        return 0

    lines = tail_log(log_file, args.lines)
    if not args.follow:
        console.print(f"Last {len(lines)} log entries:\n")
    for line in lines:
        console.print(line, highlight=False, markup=False)
    if not args.follow:
        return 0

    try:
        with open(log_file, encoding="utf-8", errors="replace") as f:
            f.seek(0, os.SEEK_END)
            while True:
                line = f.readline()
                if line:
                    console.print(line.rstrip("\n"), highlight=False, markup=False)
                else:
                    time.sleep(0.5)
    except KeyboardInterrupt:
        return 0


def cmd_watch(args: argparse.Namespace, config: ConfigManager) -> int:
    """Handle sync watch: the daemon loops in the foreground."""
    import logging

    from lore_knowledge.daemon import SyncDaemon
    from lore_knowledge.orchestrator import SyncOptions, build_orchestrator

    logging.getLogger("lore_knowledge").setLevel(logging.INFO)
    data_dir = _data_dir(args, config)
    orchestrator = build_orchestrator(config, data_dir)
    concurrency = _concurrency(config)

    def run_sync(git_pull: bool):
        options = SyncOptions(git_pull=git_pull)
        if concurrency:
            options.concurrency = concurrency
        return orchestrator.run(options)

    sources = SyncSourceConfig(config.base_path).enabled_sources()
    daemon = SyncDaemon(
        config,
        run_sync,
        sources=sources,
        data_dir=data_dir,
        debounce=args.interval,
        claim_pid=False,
        run_initial=not args.no_initial,
    )
    console.print("[dim]Watching for changes. Press Ctrl+C to stop.[/dim]")
    daemon.serve_forever()
    return 0


def cmd_sources(args: argparse.Namespace, config: ConfigManager) -> int:
    """Handle sync list, add, enable, disable and remove."""
    sources_config = SyncSourceConfig(config.base_path)

    if args.sync_command == "list":
        sources = sources_config.load()
        if not sources:
            console.print("[dim]No sources configured.[/dim]")
            console.print("Run [bold]lore sync add[/bold] to add one.")
            return 0
        console.print(create_sources_table(sources))
        console.print(f"[dim]Config: {sources_config.config_path}[/dim]", highlight=False)
        return 0

    if args.sync_command == "add":
        if args.path and args.project:
            from lore_knowledge.interactive import default_source_name

            fields = {
                "name": args.name or default_source_name(args.path),
                "path": args.path,
                "glob": args.glob or "**/*",
                "project": args.project,
            }
        else:
            from lore_knowledge.interactive import prompt_sync_source

            try:
                fields = prompt_sync_source(args.name, args.path, args.glob, args.project)
            except ValueError as e:
                print_error(str(e))
                return 1
            if fields is None:
                print_warning("Cancelled")
                return 0
        sources_config.add(SyncSource(**fields))
        print_success(f"✓ Added \"{fields['name']}\"")
        console.print("Run [bold]lore sync[/bold] to index these files now.")
        return 0

    if args.sync_command in ("enable", "disable"):
        sources_config.update(args.name, enabled=args.sync_command == "enable")
        print_success(f"{args.sync_command.capitalize()}d \"{args.name}\"")
        return 0

    sources_config.remove(args.name)
    print_success(f"Removed \"{args.name}\"")
    return 0


def cmd_init(args: argparse.Namespace, config: ConfigManager) -> int:
    """Handle the init command."""
    from lore_knowledge.data_repo import init_data_repo

    data_dir = config.get_data_dir(args.path)
    result = init_data_repo(data_dir)
    config.set_data_dir(data_dir)
    SyncSourceConfig(config.base_path).initialize()

    print_success(f"Initialized data repository: {data_dir}")
    if not result.git_initialized:
        print_warning(f"Git setup skipped: {result.error}")
    console.print("Add a source with: [bold]lore sync add[/bold]")
    return 0


def cmd_paths(args: argparse.Namespace, config: ConfigManager) -> int:
    """Handle the paths command."""
    from lore_knowledge.source_paths import PathIndex

    if args.paths_command != "rebuild":
        print_error("Usage: lore paths rebuild")
        return 1
    counts = PathIndex(_data_dir(args, config)).rebuild()
    print_success(
        f"Rebuilt path index: {counts['new_format']} indexed, "
        f"{counts['legacy']} legacy directories"
    )
    return 0


def cmd_blocklist(args: argparse.Namespace, config: ConfigManager) -> int:
    """Handle the blocklist command."""
    from lore_knowledge.blocklist import add_to_blocklist, load_blocklist, remove_from_blocklist

    data_dir = _data_dir(args, config)
    if args.blocklist_command == "add":
        if add_to_blocklist(data_dir, *args.hashes):
            print_success(f"Blocked {len(args.hashes)} hash(es)")
        else:
            console.print("Already blocked")
        return 0
    if args.blocklist_command == "remove":
        if remove_from_blocklist(data_dir, args.hash):
            print_success(f"Unblocked {args.hash}")
            return 0
        print_error(f"Hash not in blocklist: {args.hash}")
        return 1

    hashes = sorted(load_blocklist(data_dir))
    if not hashes:
        console.print("[dim]Blocklist is empty.[/dim]")
    for content_hash in hashes:
        console.print(content_hash, highlight=False)
    return 0


def cmd_completions(args: argparse.Namespace) -> int:
    """Handle the completions command."""
    if not ARGCOMPLETE_AVAILABLE:
        print_error("argcomplete is not installed.")
        console.print("Install with: [cyan]pip install 'lore-knowledge[completions]'[/cyan]")
        return 1

    shell = args.shell

    if shell == "bash":
        print("""# Add this to your ~/.bashrc:
eval "$(register-python-argcomplete lore)"
""")
    elif shell == "zsh":
        print("""# Add this to your ~/.zshrc:
autoload -U bashcompinit
bashcompinit
eval "$(register-python-argcomplete lore)"
""")
    elif shell == "fish":
        print("""# Run this command once:
register-python-argcomplete --shell fish lore > ~/.config/fish/completions/lore.fish
""")

    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()

    # Enable argcomplete if available
    if ARGCOMPLETE_AVAILABLE:
        argcomplete.autocomplete(parser)

    args = parser.parse_args(argv)

    # Handle --no-color flag and NO_COLOR environment variable
    if args.no_color or os.environ.get("NO_COLOR"):
        console.no_color = True

    if not args.command:
        parser.print_help()
        return 0

    # Handle completions command separately (doesn't need config)
    if args.command == "completions":
        return cmd_completions(args)

    configure_cli_logging(args.verbose)
    config = ConfigManager()

    try:
        if args.command == "sync":
            sync_command = args.sync_command
            if sync_command is None:
                return cmd_sync(args, config)
            elif sync_command in ("start", "stop", "restart", "status"):
                return cmd_daemon(args, config)
            elif sync_command == "logs":
                return cmd_logs(args, config)
            elif sync_command == "watch":
                return cmd_watch(args, config)
            else:
                return cmd_sources(args, config)
        elif args.command == "init":
            return cmd_init(args, config)
        elif args.command == "paths":
            return cmd_paths(args, config)
        elif args.command == "blocklist":
            return cmd_blocklist(args, config)
        else:
            parser.print_help()
            return 0
    except ConfigError as e:
        print_error(str(e))
        return 1
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        return 130
    except Exception as e:
        print_error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
