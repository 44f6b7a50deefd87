import argparse
from pathlib import Path
from . import __version__

def create_parser():
    parser = argparse.ArgumentParser(
        description=f"Local video catalog with metadata enrichment (v{__version__}).",
        formatter_class=argparse.RawTextHelpFormatter
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--config', type=Path, help='Path to TOML config file (overrides default search).')
    parser.add_argument('--profile', type=str, default='default', help='Configuration profile to use.')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], default=None, help='Console logging level (overrides config).')
    parser.add_argument('--log-file', type=str, default=None, help='Log file path (overrides config).')
    parser.add_argument('--tmdb-language', type=str, default=None, help='Language for TMDB API calls (e.g., "de-DE", overrides config/env).')
    parser.add_argument('--db', dest='library_db_path', type=str, default=None, help='Library database path (overrides config).')
    parser.add_argument('--quiet', '-q', action='store_true', default=False, help='Suppress all non-essential console output. Errors still shown.')

    subparsers = parser.add_subparsers(dest='command', required=True, help='Action to perform')

    # --- Folder Subparser ---
    parser_folder = subparsers.add_parser('folder', help='Manage watched library folders.')
    folder_subparsers = parser_folder.add_subparsers(dest='folder_command', required=True, help='Folder action to perform')

    parser_folder_add = folder_subparsers.add_parser('add', help='Add a folder to the library.')
    parser_folder_add.add_argument('path', type=Path, help='Directory to watch.')
    parser_folder_add.add_argument('--name', type=str, default=None, help='Display name (default: directory name).')
    parser_folder_add.add_argument('--scan', action='store_true', default=False, help='Rescan the folder right after adding it.')

    folder_subparsers.add_parser('list', help='List library folders in the order they were added.')

    parser_folder_remove = folder_subparsers.add_parser('remove', help='Remove a folder from the library.')
    parser_folder_remove.add_argument('folder_id', type=str, help='ID of the folder to remove.')
    parser_folder_remove.add_argument('--delete-files', action='store_true', default=False, help='Also delete its catalog entries (files on disk are never touched).')

    # --- Rescan Subparser ---
    parser_rescan = subparsers.add_parser('rescan', help='Reconcile folders with the catalog.', formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    parser_rescan.add_argument('folder_id', type=str, nargs='?', default=None, help='ID of the folder to rescan (required unless --all is used).')
    parser_rescan.add_argument('--all', action='store_true', default=False, help='Rescan every library folder.')
    parser_rescan.add_argument('--no-enrich', action='store_true', default=False, help='Do not drain the enrichment queue after scanning.')
    parser_rescan.add_argument('--use-metadata', action=argparse.BooleanOptionalAction, default=None, help='Enable/disable metadata fetching (overrides config).')
    parser_rescan.add_argument('--inline-metadata', action=argparse.BooleanOptionalAction, default=None, help='Resolve metadata during the scan itself (overrides config).')
    parser_rescan.add_argument('--min-file-size-mb', type=int, default=None, help='Size floor in MB (overrides config).')
    parser_rescan.add_argument('--video-extensions', type=str, default=None, help='Comma-separated video extensions (overrides config).')
    parser_rescan.add_argument('--verbose', '-v', action='store_true', default=False, help='Print every file as it is seen.')

    # --- Enrich Subparser ---
    parser_enrich = subparsers.add_parser('enrich', help='Fetch metadata for every incomplete catalog entry.')
    parser_enrich.add_argument('--concurrency', dest='enrichment_concurrency', type=int, default=None, help='Concurrent workers (overrides config).')

    # --- Report Subparsers ---
    subparsers.add_parser('duplicates', help='Report files with the same name and size (nothing is deleted).')

    parser_files = subparsers.add_parser('files', help='List or search catalog entries.')
    parser_files.add_argument('--search', '-s', type=str, default=None, help='Case-insensitive title search.')
    parser_files.add_argument('--include-hidden', action='store_true', default=False, help='Include hidden entries in the listing.')

    # --- File Action Subparsers ---
    parser_hide = subparsers.add_parser('hide', help='Hide a catalog entry (or unhide it with --unhide).')
    parser_hide.add_argument('file_id', type=str, help='ID of the catalog entry.')
    parser_hide.add_argument('--unhide', action='store_true', default=False, help='Make the entry visible again.')

    parser_fav = subparsers.add_parser('favorite', help='Toggle the favorite flag of a catalog entry.')
    parser_fav.add_argument('file_id', type=str, help='ID of the catalog entry.')

    parser_reset = subparsers.add_parser('reset', help='Delete every folder and catalog entry.')
    parser_reset.add_argument('--yes', '-y', action='store_true', default=False, help='Do not ask for confirmation.')

    # --- Config Subparser ---
    parser_config = subparsers.add_parser('config', help='Manage application configuration.')
    config_subparsers = parser_config.add_subparsers(dest='config_command', required=True, help='Configuration action to perform')

    parser_config_show = config_subparsers.add_parser('show', help='Show the currently loaded configuration.')
    parser_config_show.add_argument('--raw', action="store_true", help="Show the raw TOML content of the loaded config file without merging or validation.")

    config_subparsers.add_parser('validate', help='Validate the configuration file against the schema.')

    parser_config_generate = config_subparsers.add_parser('generate', help='Generate a default config.toml file.')
    parser_config_generate.add_argument('--output', type=Path, default=None, help='Optional path to save the generated config.toml. Defaults to config.toml in the current directory.')
    parser_config_generate.add_argument('--force', '-f', action='store_true', help='Overwrite the config file if it already exists at the target location.')

    # --- Setup Subparser ---
    parser_setup = subparsers.add_parser('setup', help='Interactively set up API keys.')
    parser_setup.add_argument("--dotenv-path", type=Path, default=None, help="Specify a custom path for the .env file (default: .env in CWD).")

    return parser

def parse_arguments(argv=None):
    parser = create_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, 'profile') or args.profile is None:
        args.profile = 'default'
    if args.command == 'rescan' and not args.all and not args.folder_id:
        parser.error("rescan: a FOLDER_ID is required unless --all is given.")
    return args
