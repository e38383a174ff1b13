#!/usr/bin/env python3
"""
appsync  —  Mirror a local folder into a running app container over SSH
======================================================================

Subcommands:
  init      Create a .appsync config file (and a starter .syncignore) here.
  sync      Pull the container folder once, then push every local change live.

Run 'appsync <subcommand> --help' for more details.
"""
import sys
import argparse
from pathlib import Path

SYNCIGNORE_TEMPLATE = """# Files and folders never sent to (or pulled from) the container.
# gitignore syntax: globs, **, !negation, trailing / for directories.
.git/
node_modules/
__pycache__/
*.pyc
*.log
.DS_Store
.idea/
.vscode/
"""


# ── init ─────────────────────────────────────────────────────────────────────

def cmd_init(args):
    """Create a .appsync profile file in the current directory."""
    from appsync import config as _cfg

    target = Path.cwd() / _cfg.PROJECT_FILE

    if target.exists() and not args.force:
        print(f"error: {_cfg.PROJECT_FILE} already exists in {Path.cwd()}", file=sys.stderr)
        print("Use --force to overwrite.", file=sys.stderr)
        sys.exit(1)

    global_cfg = _cfg.load_global_config()
    g_defaults = global_cfg.get("defaults", {})

    app = args.app or g_defaults.get("app", "")
    if not app and sys.stdin.isatty():
        app = input("App name: ").strip()
    if not app:
        print("error: an app name is required.", file=sys.stderr)
        sys.exit(1)

    transport = args.transport or g_defaults.get("transport", _cfg.TRANSPORT)
    profile_name = args.profile or "default"

    def _yq(value: str) -> str:
        """Wrap a string in YAML single quotes, escaping embedded single quotes."""
        return "'" + value.replace("'", "''") + "'"

    lines = [
        "# .appsync — appsync project configuration",
        "#",
        "# profiles: list of sync profiles for this project.",
        "# Each profile has: name, app, and optionally source, target, transport.",
        "# target is relative to ~/app inside the container.",
        "profiles:",
        f"  - name: {profile_name}",
        f"    app: {_yq(app)}",
        f"    transport: {transport}",
    ]
    if args.source:
        lines.append(f"    source: {_yq(args.source.replace(chr(92), '/'))}")
    if args.target:
        lines.append(f"    target: {_yq(args.target)}")

    content = "\n".join(lines) + "\n"
    ignore_path = Path.cwd() / _cfg.IGNORE_FILENAME

    if args.dry_run:
        print(f"[dry-run] Would write {target}:")
        print(content)
        if not ignore_path.exists():
            print(f"[dry-run] Would write {ignore_path}:")
            print(SYNCIGNORE_TEMPLATE)
        elif args.verbose:
            print(f"{ignore_path} already exists; would not overwrite.")
        return

    target.write_text(content, encoding="utf-8")
    print(f"Created {target}")

    if not ignore_path.exists():
        ignore_path.write_text(SYNCIGNORE_TEMPLATE, encoding="utf-8")
        print(f"Created {ignore_path}")
    elif args.verbose:
        print(f"{ignore_path} already exists; not modified.")

    if args.verbose:
        print(content)


# ── sync ─────────────────────────────────────────────────────────────────────

def cmd_sync(args):
    """Run a live sync, using the nearest .appsync config for defaults."""
    import appsync.config as _cfg
    from appsync.core.sync_engine import run_sync
    from appsync.exceptions import AppSyncError

    project_file = _cfg.find_project_file()
    if project_file is not None:
        if args.verbose:
            print(f"[config] Using {project_file}")
        data = _cfg.load_project_file(project_file)
        profile = _cfg.get_profile(data, args.profile or "default")
        try:
            _cfg.apply_profile(profile)
        except ValueError as exc:
            print(f"error: {project_file}: {exc}", file=sys.stderr)
            sys.exit(1)

    app = args.app or _cfg.APP_NAME
    if not app:
        print("error: You must pass an app name.", file=sys.stderr)
        sys.exit(1)

    try:
        run_sync(
            app,
            source=args.source or _cfg.SOURCE_DIR,
            target=args.target or _cfg.TARGET_DIR,
            force_sync=args.force or _cfg.FORCE_SYNC,
            transport=args.transport or _cfg.TRANSPORT,
            forward_specs=args.forward or _cfg.FORWARD_SPECS,
            verbose=args.verbose,
        )
    except (AppSyncError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(1)


# ── main ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="appsync",
        description="Synchronize a folder to a container directory.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    # ── init ──────────────────────────────────────────────────────────────────
    init_p = subparsers.add_parser(
        "init",
        help="Create a .appsync config file in the current directory",
        description="Create a .appsync YAML config file for this project.",
    )
    init_p.add_argument("--app", metavar="NAME", help="App to sync with")
    init_p.add_argument("--source", metavar="PATH",
                        help="Local folder (default: ./sync-<app>)")
    init_p.add_argument("--target", metavar="PATH",
                        help="Container folder relative to ~/app (default: ~/app)")
    init_p.add_argument("--transport", choices=("sftp", "scp"),
                        help="Remote transport (default: sftp)")
    init_p.add_argument("--profile", metavar="NAME", default="default",
                        help="Profile name to create (default: default)")
    init_p.add_argument("--force", action="store_true",
                        help="Overwrite existing .appsync")
    init_p.add_argument("-n", "--dry-run", action="store_true",
                        help="Preview without writing files")
    init_p.add_argument("-v", "--verbose", action="store_true",
                        help="Show extra output")

    # ── sync ──────────────────────────────────────────────────────────────────
    sync_p = subparsers.add_parser(
        "sync",
        help="Mirror a local folder into the app container and keep it in sync",
        description="Pull the container folder if the local one is empty, "
                    "then push every local change as it happens.",
    )
    sync_p.add_argument("app", nargs="?", metavar="APP",
                        help="App name (default: from .appsync)")
    sync_p.add_argument("-s", "--source", metavar="PATH",
                        help="Local folder (default: ./sync-<app>)")
    sync_p.add_argument("-t", "--target", metavar="PATH",
                        help="Container folder relative to ~/app (default: ~/app)")
    sync_p.add_argument("-f", "--force", action="store_true",
                        help="Pull from the container even if the local folder is not empty")
    sync_p.add_argument("--transport", choices=("sftp", "scp"),
                        help="Remote transport (default: sftp)")
    sync_p.add_argument("-L", "--forward", action="append", metavar="LISTEN=CONNECT",
                        help="Forward a local port through the tunnel, e.g. 8080=localhost:8080")
    sync_p.add_argument("--profile", metavar="NAME", default="default",
                        help="Profile to use (default: default)")
    sync_p.add_argument("-v", "--verbose", action="store_true",
                        help="Show every event and transfer progress")
    return parser


def main(argv=None):
    """CLI entry point for appsync"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "init":
        cmd_init(args)
    elif args.command == "sync":
        cmd_sync(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
