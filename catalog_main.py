#!/usr/bin/env python3
import sys
import json
import asyncio
import logging
import builtins
from pathlib import Path
from typing import Any, Dict, Optional

import pytomlpp
from pydantic import ValidationError

from catalog_app.ui_utils import (
    ConsoleClass, ConfirmClass, TextClass, ProgressClass, DEFAULT_PROGRESS_COLUMNS,
    make_console, print_stderr_message, folders_table, files_table, duplicates_table,
    outcome_text, queue_stats_text, scan_event_printer
)
from catalog_app.cli import parse_arguments
from catalog_app.config_manager import (
    ConfigManager, ConfigHelper, interactive_api_setup,
    RootConfigModel, BaseProfileSettings, generate_default_toml_content,
    DEFAULT_CONFIG_FILENAME, API_KEY_SERVICES
)
from catalog_app.log_setup import setup_logging
from catalog_app.library_service import LibraryService
from catalog_app.exceptions import CatalogError, ConfigError as AppConfigError

log = logging.getLogger("catalog_app")


async def drain_enrichment(service: LibraryService, console: ConsoleClass, is_quiet: bool):
    """Starts the enrichment queue and shows a progress bar until it goes idle."""
    queue = service.queue
    if queue is None:
        console.print("[yellow]No metadata provider configured (run 'setup'); skipping enrichment.[/yellow]")
        return
    if queue.pending_count == 0:
        console.print("Nothing to enrich.")
        return

    with ProgressClass(*DEFAULT_PROGRESS_COLUMNS, console=console, disable=is_quiet) as progress:
        stats = queue.get_stats()
        task_id = progress.add_task("Enriching", total=stats.total, completed=stats.processed, item_name="")

        def _on_stats(current):
            progress.update(task_id, total=current.total, completed=current.processed,
                            item_name=f"{current.succeeded} ok, {current.failed} failed")

        unsubscribe = queue.on_stats_changed(_on_stats)
        try:
            queue.start()
            await queue.wait_idle()
        finally:
            unsubscribe()
    console.print(queue_stats_text(queue.get_stats()))


def generate_config_file(args, console: ConsoleClass, is_quiet: bool) -> int:
    if not log.handlers:
        setup_logging(log_level_console=logging.INFO)
    log.info("Executing 'config generate' command.")
    target_path: Path = args.output.resolve() if args.output else (Path.cwd() / DEFAULT_CONFIG_FILENAME).resolve()
    log.debug(f"Generate config: target path {target_path}")

    if target_path.exists() and not args.force:
        if is_quiet:
            builtins.print(f"Config file {target_path} exists. Use --force to overwrite (quiet mode).", file=sys.stderr)
            return 1
        console.print(f"[bold yellow]Warning:[/bold yellow] Config file already exists at [cyan]{target_path}[/cyan].")
        if not ConfirmClass.ask("Overwrite existing file?", default=False):
            console.print("Config file generation cancelled.")
            return 0
        log.info(f"User confirmed overwrite for existing config file at {target_path}")

    try:
        target_path.parent.mkdir(parents=True, exist_ok=True)
        target_path.write_text(generate_default_toml_content(), encoding="utf-8")
    except OSError as e:
        builtins.print(f"Error: Could not write configuration file to {target_path}: {e}", file=sys.stderr)
        log.error(f"Failed to write generated config to {target_path}: {e}")
        return 1
    console.print(f"[green]✓ Default configuration file generated successfully at: {target_path}[/green]")
    log.info(f"Default config.toml generated at {target_path}")
    return 0


def show_config(args, manager: ConfigManager, cfg: ConfigHelper, console: ConsoleClass, is_quiet: bool):
    console.print(f"--- Configuration Effective for Profile: '{args.profile}' ---")
    if manager.config_path.is_file():
        console.print(f"Config file loaded: [cyan]{manager.config_path}[/cyan]")
    else:
        console.print(f"Config file [yellow]{manager.config_path}[/yellow] not found. Using internal defaults and environment variables.")
    if getattr(args, 'raw', False):
        console.print("\n--- Raw TOML Content ---")
        raw_content = manager.get_raw_toml_content()
        console.print(raw_content if raw_content else "# No config file loaded or content was empty.", markup=False)
        return

    effective_settings: Dict[str, Any] = {key: cfg(key, default_value=None) for key in BaseProfileSettings.model_fields}
    api_info: Dict[str, Any] = {f"{service}_api_key_loaded": bool(cfg.get_api_key(service)) for service in API_KEY_SERVICES}
    api_info["tmdb_language"] = cfg('tmdb_language', 'en-US')
    effective_settings["_api_info_"] = api_info
    try:
        console.print(json.dumps(effective_settings, indent=2, default=str), markup=False)
    except TypeError as e_json:
        log.error(f"Could not serialize effective settings to JSON: {e_json}")
        print_stderr_message(console, "Could not display effective settings due to serialization error. Check logs.", is_quiet)


def validate_config(manager: ConfigManager, console: ConsoleClass, is_quiet: bool) -> int:
    console.print(f"--- Validating Configuration File: {manager.config_path} ---")
    if not manager.config_path.is_file():
        console.print(f"Config file '[yellow]{manager.config_path}[/yellow]' not found. Nothing to validate.")
        return 0
    try:
        cfg_dict = pytomlpp.loads(manager.config_path.read_text(encoding='utf-8'))
        RootConfigModel.model_validate(cfg_dict)
    except pytomlpp.DecodeError as e_toml:
        print_stderr_message(console, TextClass(f"Error: Config file '{manager.config_path}' is not valid TOML: {e_toml}", style="bold red"), is_quiet)
        log.error(f"Config file TOML validation failed during 'config validate': {e_toml}")
        return 1
    except ValidationError as e_val:
        print_stderr_message(console, TextClass(f"Error: Config file '{manager.config_path}' validation failed:", style="bold red"), is_quiet)
        for error_item in e_val.errors():
            loc = " -> ".join(map(str, error_item['loc']))
            print_stderr_message(console, TextClass(f"  - Field `{loc}`: {error_item['msg']} (type: {error_item['type']})"), is_quiet)
        log.error(f"Config file Pydantic validation failed during 'config validate': {e_val.errors()}")
        return 1
    except OSError as e_io:
        print_stderr_message(console, TextClass(f"Error: Could not read '{manager.config_path}': {e_io}", style="bold red"), is_quiet)
        return 1
    console.print("[green]Configuration file syntax is valid and conforms to the schema.[/green]")
    log.info(f"Config file '{manager.config_path}' validated successfully by 'config validate' command.")
    return 0


async def run_library_command(args, service: LibraryService, console: ConsoleClass, is_quiet: bool) -> int:
    if args.command == 'folder':
        if args.folder_command == 'add':
            folder = await service.add_folder(args.path, args.name)
            console.print(f"[green]✓[/green] Folder [cyan]{folder.display_name}[/cyan] ({folder.id}) -> {folder.path}")
            if args.scan:
                outcome = await service.rescan_folder(folder.id, None if is_quiet else scan_event_printer(console))
                console.print(outcome_text(outcome))
                await drain_enrichment(service, console, is_quiet)
        elif args.folder_command == 'list':
            folders = await service.list_folders()
            if not folders:
                console.print("No library folders yet. Add one with 'folder add PATH'.")
            else:
                console.print(folders_table(folders))
        elif args.folder_command == 'remove':
            affected = await service.remove_folder(args.folder_id, delete_files=args.delete_files)
            verb = "deleted" if args.delete_files else "detached"
            console.print(f"[green]✓[/green] Folder {args.folder_id} removed; {affected} catalog entr{'y' if affected == 1 else 'ies'} {verb}.")
        return 0

    if args.command == 'rescan':
        printer = None if is_quiet else scan_event_printer(console, verbose=args.verbose)
        if args.all:
            results = await service.rescan_all(printer)
            if not results:
                console.print("No library folders to rescan.")
            for outcome in results.values():
                console.print(outcome_text(outcome))
        else:
            console.print(outcome_text(await service.rescan_folder(args.folder_id, printer)))
        if args.no_enrich:
            pending = service.queue.pending_count if service.queue is not None else 0
            if pending:
                console.print(f"{pending} entr{'y' if pending == 1 else 'ies'} left for 'enrich'.")
        else:
            await drain_enrichment(service, console, is_quiet)
        return 0

    if args.command == 'enrich':
        added = await service.enqueue_incomplete()
        log.info(f"{added} incomplete catalog entr{'y' if added == 1 else 'ies'} queued.")
        await drain_enrichment(service, console, is_quiet)
        return 0

    if args.command == 'duplicates':
        groups = await service.find_duplicates()
        if not groups:
            console.print("No duplicates found.")
        else:
            console.print(duplicates_table(groups))
        return 0

    if args.command == 'files':
        if args.search:
            files = await service.search(args.search)
            title = f"Search: {args.search}"
        else:
            files = await service.list_files(include_hidden=args.include_hidden)
            title = "Catalog"
        if not files:
            console.print("No matching catalog entries.")
        else:
            console.print(files_table(files, title=title))
        return 0

    if args.command == 'hide':
        if not await service.hide_file(args.file_id, hidden=not args.unhide):
            raise CatalogError(f"Catalog entry '{args.file_id}' not found.")
        console.print(f"[green]✓[/green] {args.file_id} {'visible again' if args.unhide else 'hidden'}.")
        return 0

    if args.command == 'favorite':
        state = await service.toggle_favorite(args.file_id)
        if state is None:
            raise CatalogError(f"Catalog entry '{args.file_id}' not found.")
        console.print(f"[green]✓[/green] {args.file_id} {'marked as favorite' if state else 'no longer a favorite'}.")
        return 0

    if args.command == 'reset':
        if not args.yes:
            if is_quiet:
                builtins.print("Refusing to reset the library in quiet mode without --yes.", file=sys.stderr)
                return 1
            if not ConfirmClass.ask("Delete every folder and catalog entry?", default=False):
                console.print("Reset cancelled.")
                return 0
        await service.reset_library()
        console.print("[green]✓[/green] Library reset.")
        return 0

    raise CatalogError(f"Unknown command: {args.command}")


async def main_async(argv=None) -> int:
    args = parse_arguments(argv)
    is_quiet = getattr(args, 'quiet', False)
    console = make_console(quiet=is_quiet)
    service: Optional[LibraryService] = None

    try:
        if args.command == 'setup':
            if is_quiet:
                builtins.print("ERROR: Interactive setup cannot be run in quiet mode.", file=sys.stderr)
                return 1
            setup_logging(log_level_console=getattr(logging, (args.log_level or 'INFO').upper(), logging.INFO))
            log.debug(f"Executing setup command with .env path: {args.dotenv_path}")
            return 0 if interactive_api_setup(dotenv_path_override=args.dotenv_path, quiet_mode=is_quiet) else 1

        if args.command == 'config' and args.config_command == 'generate':
            return generate_config_file(args, console, is_quiet)

        config_manager_instance = ConfigManager(
            config_path_override=getattr(args, 'config', None),
            interactive_fallback=False,
            quiet_mode=is_quiet
        )
        cfg = ConfigHelper(config_manager_instance, args)

        log_level_str = cfg('log_level', 'INFO', arg_value=getattr(args, 'log_level', None))
        setup_logging(
            log_level_console=getattr(logging, str(log_level_str).upper(), logging.INFO),
            log_file=cfg('log_file', None, arg_value=getattr(args, 'log_file', None))
        )
        log.debug(f"Full logging configured. Parsed args: {args}")
        log.debug(f"Using profile: {args.profile}")

        if args.command == 'config':
            if args.config_command == 'show':
                show_config(args, config_manager_instance, cfg, console, is_quiet)
                return 0
            return validate_config(config_manager_instance, console, is_quiet)

        service = LibraryService.from_config(cfg)
        return await run_library_command(args, service, console, is_quiet)

    except AppConfigError as e_app_cfg_fatal:
        builtins.print(f"FATAL CONFIGURATION ERROR: {e_app_cfg_fatal}", file=sys.stderr)
        if log.handlers: log.critical(f"Config Error: {e_app_cfg_fatal}")
        return 2
    except CatalogError as e_catalog:
        if log.handlers: log.error(f"Application Error: {e_catalog}", exc_info=log.isEnabledFor(logging.DEBUG))
        print_stderr_message(console, TextClass(f"ERROR: {e_catalog}", style="bold red"), is_quiet)
        return 1
    finally:
        if service is not None:
            await service.wait_for_jobs()
            service.close()


def main():
    try:
        sys.exit(asyncio.run(main_async()))
    except KeyboardInterrupt:
        builtins.print("\nOperation cancelled by user.", file=sys.stderr)
        sys.exit(130)
    except Exception as e_top_level:
        builtins.print(f"FATAL UNEXPECTED ERROR: {type(e_top_level).__name__}: {e_top_level}", file=sys.stderr)
        builtins.print("Please check the log file for more details if logging was enabled.", file=sys.stderr)
        if log.handlers:
            log.critical("FATAL UNHANDLED ERROR", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
