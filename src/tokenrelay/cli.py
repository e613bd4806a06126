import argparse

from tokenrelay.config import Config


def parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    splits a listen address such as ':3000' or '127.0.0.1:3000'
    into host and port. An empty host binds every interface.
    """
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit() or not 0 < int(port) < 65536:
        raise ValueError(
            f"invalid listen address {addr!r}, expected [host]:port with port 1-65535"
        )
    return (host or "0.0.0.0", int(port))


def _listen_address(value: "str") -> "str":
    try:
        parse_listen_address(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc
    return value


def parse_args(argv: "list[str] | None" = None) -> "Config":
    config = Config.from_env()

    parser = argparse.ArgumentParser(
        prog="tokenrelay",
        description="Local relay that records LLM token usage and cost",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default="127.0.0.1:3000",
        type=_listen_address,
        help="Address to listen on (default: 127.0.0.1:3000)",
    )
    parser.add_argument(
        "--db.path",
        dest="db_path",
        default=config.db_path,
        help="SQLite database file (default: $TOKENRELAY_DB_PATH or usage.db)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )

    args = parser.parse_args(argv)
    config.listen_address = args.listen_address
    config.db_path = args.db_path
    config.log_level = args.log_level
    return config
