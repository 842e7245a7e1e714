from __future__ import annotations
from argparse import ArgumentParser
import asyncio
import logging
from .backend import LDAPBackend
from .config import load_config
from .server import BridgeServer


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="ldap-bridge",
        description="LDAP front end delegating binds to an upstream directory",
    )
    # -configFile is the spelling existing service units pass
    parser.add_argument(
        "--config-file",
        "--configFile",
        "-configFile",
        "-c",
        dest="config_file",
        default="config.json",
        help="JSON config file",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
    )
    return parser


def main():
    args = build_parser().parse_args()

    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("asyncio").setLevel(logging.INFO)

    config = load_config(args.config_file)
    server = BridgeServer(config, LDAPBackend(config.ldap_server))
    asyncio.run(server.run())


if __name__ == "__main__":
    main()
