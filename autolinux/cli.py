#!/usr/bin/env python3
"""
Command-line interface for installing and launching chroot Linux distributions on
rooted Android devices
"""

import os
import sys
import time
import shlex
import shutil
import getpass
import argparse
import logging
import subprocess

from . import xattrs
from .config import load_config
from .distro_catalog import all_variants, builtin_catalog, install_target, load_catalog, scan_installed
from .errors import ProvisionError
from .log_setup import configure_logging
from .progress import Phase
from .provisioner import InstallWorker, Provisioner

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1


def is_root():
    return hasattr(os, 'geteuid') and os.geteuid() == 0


PASSWORD_FLAGS = ('-p', '--password')


def strip_password_args(argv):
    """Drop -p/--password and its value; the elevated process prompts instead"""
    kept = []
    args = iter(argv)
    for arg in args:
        if arg == '--':
            kept.append(arg)
            kept.extend(args)
            break
        if arg in PASSWORD_FLAGS:
            next(args, None)
            continue
        if arg.startswith('--password=') or (arg.startswith('-p') and not arg.startswith('--')):
            continue
        kept.append(arg)
    return kept


def elevate_privileges(argv):
    """Re-run the current command through su; returns the child's exit code or None

    The su command line is visible in the process list, so a password given on
    the command line is not forwarded.
    """
    if shutil.which('su') is None:
        return None
    forwarded = strip_password_args(argv)
    if len(forwarded) != len(argv):
        logger.info("The password will be asked again after elevation")
    command = ' '.join(shlex.quote(a) for a in [sys.executable, '-m', 'autolinux.cli'] + forwarded)
    logger.info("Not root. Attempting self-elevation...")
    try:
        return subprocess.run(['su', '-c', command]).returncode
    except OSError as e:
        logger.error(f"Failed to execute su: {e}")
        return None


class AutoLinuxCLI:
    """Installer commands"""

    def __init__(self, config):
        self.config = config

    def catalog(self):
        if self.config.catalog_path:
            return load_catalog(self.config.catalog_path)
        return builtin_catalog()

    def list_distros(self):
        index = 1
        for group in self.catalog():
            print(f"{group.name} - {group.description}")
            if not group.variants:
                print("    (no images for this architecture)")
            for variant in group.variants:
                print(f"  {index:>3}. {variant.display_name:<40} {install_target(variant)}")
                index += 1
        return True

    def find_distro(self, selector):
        variants = all_variants(self.catalog())
        if selector.isdigit():
            position = int(selector) - 1
            if 0 <= position < len(variants):
                return variants[position]
            return None
        for variant in variants:
            if install_target(variant) == selector:
                return variant
        return None

    def install(self, selector, username=None, password=None):
        distro = self.find_distro(selector)
        if distro is None:
            logger.error(f"Unknown distribution: {selector} (see 'autolinux list')")
            return False

        if not username:
            username = input("Username: ").strip()
        if not password:
            password = getpass.getpass("Password: ")
        if not username or not password:
            logger.error("Username and password are required")
            return False

        worker = InstallWorker(Provisioner(self.config))
        worker.start(distro, username, password)

        last_line = None
        final_state = None
        while final_state is None:
            time.sleep(POLL_INTERVAL)
            finished = not worker.running
            for state in worker.poll():
                line = state.describe()
                if line != last_line:
                    print(line, flush=True)
                    last_line = line
                if state.is_terminal:
                    final_state = state
            if finished:
                break

        worker.join()
        return final_state is not None and final_state.phase == Phase.FINISHED

    def installed(self):
        distros = scan_installed(self.config.base_dir)
        if not distros:
            print(f"No distributions installed under {self.config.base_dir}")
            return True
        for distro in distros:
            print(f"{distro.name}")
            print(f"    script: {distro.script_path}")
            print(f"    users:  {', '.join(distro.users)}")
        return True

    def start(self, name, user='root'):
        for distro in scan_installed(self.config.base_dir):
            if distro.name == name:
                logger.info(f"Launching {distro.name} as user {user}...")
                return subprocess.run(['sh', distro.script_path, user]).returncode == 0
        logger.error(f"Not installed: {name}")
        return False

    def clean_xattr(self, path):
        if not os.path.isdir(path):
            logger.error(f"Not a directory: {path}")
            return False
        count = xattrs.clean_tree(path)
        logger.info(f"Cleaned security attributes on {count} entries under {path}")
        return True


def create_parser():
    """Create command-line parser"""
    parser = argparse.ArgumentParser(
        prog='autolinux',
        description='Install Linux distributions into a chroot on rooted Android',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show available distributions
  %(prog)s list

  # Install by number or by identity
  %(prog)s install 3 --user alice
  %(prog)s install alpine-release-3.22.2

  # Launch an installed distribution
  %(prog)s installed
  %(prog)s start ubuntu-noble-24.04.3 alice
        """
    )

    parser.add_argument('--config', help='Configuration file (YAML)')
    parser.add_argument('--verbose', action='store_true', help='Show verbose logs')

    subparsers = parser.add_subparsers(dest='subcommand', help='Available commands', required=True)

    subparsers.add_parser('list', help='List installable distributions')

    # No abbreviated options: strip_password_args only knows the full spellings
    install_parser = subparsers.add_parser('install', help='Install a distribution', allow_abbrev=False)
    install_parser.add_argument('distro', help='Catalog number or install identity')
    install_parser.add_argument('-u', '--user', help='Login to create inside the distribution')
    install_parser.add_argument('-p', '--password', help='Password for the login')

    subparsers.add_parser('installed', help='List installed distributions')

    start_parser = subparsers.add_parser('start', help='Enter an installed distribution')
    start_parser.add_argument('name', help='Installed distribution name')
    start_parser.add_argument('user', nargs='?', default='root', help='User to log in as (default: root)')

    clean_parser = subparsers.add_parser('clean-xattr', help='Strip security extended attributes from a tree')
    clean_parser.add_argument('path', help='Root of the tree')

    return parser


def main(argv=None):
    """Main function"""
    argv = sys.argv[1:] if argv is None else list(argv)
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        configure_logging(log_path=config.log_path, verbose=args.verbose)

        if args.subcommand in ('install', 'start', 'clean-xattr') and not is_root():
            returncode = elevate_privileges(argv)
            if returncode is None:
                logger.error("Root access is required, but 'su' binary not found.")
                sys.exit(1)
            sys.exit(returncode)

        cli = AutoLinuxCLI(config)

        if args.subcommand == 'list':
            success = cli.list_distros()
        elif args.subcommand == 'install':
            success = cli.install(args.distro, args.user, args.password)
        elif args.subcommand == 'installed':
            success = cli.installed()
        elif args.subcommand == 'start':
            success = cli.start(args.name, args.user)
        elif args.subcommand == 'clean-xattr':
            success = cli.clean_xattr(args.path)
        else:
            logger.error(f"Unknown command: {args.subcommand}")
            parser.print_help()
            success = False

        sys.exit(0 if success else 1)

    except KeyboardInterrupt:
        logger.info("User interrupted")
        sys.exit(130)
    except ProvisionError as e:
        logger.error(f"Execution failed: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
