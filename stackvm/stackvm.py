#!/usr/bin/env python3
"""OpenStack VM lifecycle tools — CLI entrypoint."""

import argparse

from stackvm.commands.vm import register_vm_command
from stackvm.logging_setup import setup_cli_logging


def main():
    parser = argparse.ArgumentParser(description="OpenStack VM lifecycle tools")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log provider HTTP calls")
    subparsers = parser.add_subparsers(dest="command", required=True)

    register_vm_command(subparsers)

    args = parser.parse_args()
    setup_cli_logging(verbose=args.verbose)
    args.func(args)


if __name__ == "__main__":
    main()
