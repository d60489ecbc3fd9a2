#!/usr/bin/env python3
"""Command-line utility for cloudnav."""

import argparse
import sys
from pathlib import Path
from typing import Optional, Tuple

from cloudnav.app import AppState
from cloudnav.call_states import AuthPhase, ListFolderPhase
from cloudnav.clouds.models import format_size
from cloudnav.config import Config
from cloudnav.errors import DownloadInProgressError
from cloudnav.logging_config import setup_logging
from cloudnav.path_utils import SecurityError, display_path, normalize_path
from cloudnav.storage_instance import StorageInstance

AUTH_TIMEOUT = 600


def _open_storage(args) -> Tuple[Optional[AppState], Optional[StorageInstance]]:
    config = Config()
    setup_logging(level=args.log_level or config.log_level)
    app_state = AppState(config)
    storage = app_state.storage(args.storage)
    if storage is None:
        app_state.teardown()
        wanted = f"'{args.storage}'" if args.storage else "configured"
        print(f"Error: No storage {wanted}. Add one with 'cloudnav config --add-storage ID'.")
        return None, None
    return app_state, storage


def cmd_auth(args):
    """Sign in to a storage in the browser."""
    app_state, storage = _open_storage(args)
    if storage is None:
        return 1

    if not storage.credentials.client_id or not storage.credentials.client_secret:
        print("Error: client_id and client_secret must be configured first.")
        app_state.teardown()
        return 1

    call_id = storage.start_auth()
    shown = {'phase': None}

    def report():
        state = storage.auth_state()
        if state is None or state.phase == shown['phase']:
            return
        shown['phase'] = state.phase
        if state.phase == AuthPhase.WAITING_FOR_SERVER_UP:
            print(f"Listening on {state.redirect_url}")
        elif state.phase == AuthPhase.BROWSER_LAUNCH_PENDING:
            print("Opening browser for authentication...")
            print(f"If browser doesn't open, visit: {state.auth_url}")
        elif state.phase == AuthPhase.BROWSER_OPENED:
            print("Waiting for authentication...")

    try:
        finished = app_state.run_until(
            lambda: call_id not in storage.call_states, timeout=AUTH_TIMEOUT, on_tick=report
        )
    except KeyboardInterrupt:
        storage.cancel_auth(call_id)
        app_state.tick()
        print("\nAuthentication cancelled")
        app_state.teardown()
        return 1

    visual = storage.visual_state
    if finished and not visual.auth_needed and not visual.last_error:
        print("✓ Authentication successful!")
        result = 0
    else:
        print(f"✗ Authentication failed: {visual.last_error or 'timed out'}")
        result = 1
    app_state.teardown()
    return result


def cmd_status(args):
    """Show storage status."""
    config = Config()

    print("cloudnav Status")
    print("=" * 40)
    print(f"Config Directory: {config.config_dir}")
    print(f"Log Level: {config.log_level}")

    storages = config.storages
    if not storages:
        print("Storages: (none configured)")
        return 0

    for storage in storages:
        print()
        print(f"[{storage['id']}] {storage['caption']} ({storage['type']})")
        print(f"  Client ID: {storage['client_id'] or '(not set)'}")
        print(f"  Redirect Addresses: {', '.join(storage['redirect_addresses'])}")
        print(f"  Download To: {storage['download_to']}")
        print(f"  Last Path: {display_path(storage['current_path'])}")
        if config.load_tokens(storage['id']):
            print("  Authentication: ✓ Authenticated")
        else:
            print("  Authentication: ✗ Not authenticated")

    return 0


def cmd_config(args):
    """Configure cloudnav."""
    config = Config()

    if args.add_storage:
        try:
            config.add_storage(args.add_storage, caption=args.add_storage, type='dropbox')
        except ValueError as e:
            print(f"Error: {e}")
            return 1
        print(f"✓ Added storage {args.add_storage}")

    if args.list:
        print("Current Configuration:")
        print("=" * 40)
        print(f"log_level = {config.log_level}")
        for storage in config.storages:
            print(f"[{storage['id']}]")
            for key in ('caption', 'type', 'client_id', 'redirect_addresses',
                        'current_path', 'download_to'):
                print(f"  {key} = {storage[key]}")
            print(f"  client_secret = {'(set)' if storage['client_secret'] else '(not set)'}")
        return 0

    if args.set:
        storage_id = args.storage or args.add_storage
        if storage_id is None:
            first = config.storage()
            storage_id = first['id'] if first else None

        for item in args.set:
            if '=' not in item:
                print(f"Error: Invalid format '{item}'. Use key=value")
                continue

            key, value = item.split('=', 1)
            try:
                if key == 'log_level':
                    config.set(key, value)
                elif storage_id is None:
                    print("Error: No storage configured. Use --add-storage ID first.")
                    return 1
                else:
                    if key == 'download_to':
                        value = str(Path(value).expanduser())
                    config.set_storage_value(storage_id, key, value)
            except ValueError as e:
                print(f"✗ Can't set {key}: {e}")
                return 1
            shown = '(hidden)' if key == 'client_secret' else value
            print(f"✓ Set {key} = {shown}")

        return 0

    if not args.add_storage:
        print("Use --list to view config, --add-storage ID to add a storage or --set key=value to change config")
    return 0


def cmd_list(args):
    """List a folder of a storage."""
    app_state, storage = _open_storage(args)
    if storage is None:
        return 1

    if storage.visual_state.auth_needed or not storage.credentials.has_tokens():
        print("Error: Not authenticated. Run 'cloudnav auth' first.")
        app_state.teardown()
        return 1

    path = normalize_path(args.path if args.path is not None else storage.current_path)
    print(f"Fetching {display_path(path)}...")
    call_id = storage.nav_to(path)

    announced = []

    def report():
        state = storage.call_states.get(call_id)
        if state is None:
            return
        if state.data.phase == ListFolderPhase.REFRESHING_TOKEN and not announced:
            announced.append(True)
            print("Refreshing access token...")

    try:
        app_state.run_until(lambda: call_id not in storage.call_states, on_tick=report)
    except KeyboardInterrupt:
        app_state.teardown()
        return 1

    visual = storage.visual_state
    if visual.list_folder_error or visual.folder is None or visual.folder.path != path:
        print(f"Error: {visual.list_folder_error or 'listing did not complete'}")
        app_state.teardown()
        return 1

    items = sorted(visual.folder.items, key=lambda i: (not i.is_folder, i.name.lower()))
    print(f"\n{visual.v_path} ({len(items)} items):")
    print("=" * 60)
    for item in items:
        name = f"{item.name}/" if item.is_folder else item.name
        print(f"{name:40s} {format_size(item.size):>15s}")

    app_state.teardown()
    return 0


def cmd_download(args):
    """Download one file."""
    app_state, storage = _open_storage(args)
    if storage is None:
        return 1

    if storage.visual_state.auth_needed or not storage.credentials.has_tokens():
        print("Error: Not authenticated. Run 'cloudnav auth' first.")
        app_state.teardown()
        return 1

    local_path = Path(args.to).expanduser() if args.to else None
    try:
        call_id = storage.download_file(args.remote, local_path)
    except (SecurityError, DownloadInProgressError) as e:
        print(f"Error: {e}")
        app_state.teardown()
        return 1

    def report():
        state = storage.call_states.get(call_id)
        if state is None:
            return
        data = state.data
        total = format_size(data.total_size) if data.total_size is not None else '?'
        print(f"\r{format_size(data.bytes_downloaded)} of {total}", end='', flush=True)

    try:
        app_state.run_until(lambda: call_id not in storage.call_states, on_tick=report)
    except KeyboardInterrupt:
        storage.cancel_download(call_id)
        app_state.tick()
        print("\nDownload cancelled")
        app_state.teardown()
        return 1
    print()

    error = storage.visual_state.download_errors.get(call_id)
    if error:
        print(f"✗ Download failed: {error}")
        result = 1
    else:
        print(f"✓ Saved to {storage.visual_state.completed_downloads[-1]}")
        result = 0
    app_state.teardown()
    return result


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='cloudnav - browse and download files from cloud storage'
    )
    parser.add_argument('--storage', help='Storage id (defaults to the first configured storage)')
    parser.add_argument('--log-level', help='Override the configured log level')

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    auth_parser = subparsers.add_parser('auth', help='Sign in to a storage')
    auth_parser.set_defaults(func=cmd_auth)

    status_parser = subparsers.add_parser('status', help='Show storage status')
    status_parser.set_defaults(func=cmd_status)

    config_parser = subparsers.add_parser('config', help='Configure cloudnav')
    config_parser.add_argument('--list', action='store_true', help='List configuration')
    config_parser.add_argument('--add-storage', metavar='ID', help='Add a Dropbox storage')
    config_parser.add_argument('--set', nargs='+', help='Set config (key=value)')
    config_parser.set_defaults(func=cmd_config)

    list_parser = subparsers.add_parser('list', help='List a folder')
    list_parser.add_argument('path', nargs='?', help='Folder path (defaults to the last browsed folder)')
    list_parser.set_defaults(func=cmd_list)

    download_parser = subparsers.add_parser('download', help='Download a file')
    download_parser.add_argument('remote', help='Remote file path')
    download_parser.add_argument('--to', help='Local destination (defaults to the download directory)')
    download_parser.set_defaults(func=cmd_download)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
