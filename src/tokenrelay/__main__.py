import structlog
import uvicorn

from tokenrelay.app import create_app
from tokenrelay.cli import parse_args, parse_listen_address
from tokenrelay.ledger import Ledger
from tokenrelay.logging import setup_logging
from tokenrelay.metrics import RelayMetrics
from tokenrelay.provider.anthropic import AnthropicUsageClient
from tokenrelay.relay import Relay

logger = structlog.get_logger()


def main() -> "None":
    config = parse_args()
    setup_logging(config.log_level)

    if not config.key_loaded:
        # manual entry and reads still work; only the relay refuses calls
        logger.warning("api_key_missing", hint="set ANTHROPIC_API_KEY to enable the relay")

    ledger = Ledger(config.db_path)
    metrics = RelayMetrics()
    relay = Relay(config, ledger, metrics)
    usage_client = AnthropicUsageClient(config)
    app = create_app(config, ledger, relay, usage_client, metrics)

    host, port = parse_listen_address(config.listen_address)
    logger.info(
        "server_starting",
        host=host,
        port=port,
        db_path=config.db_path,
        key_loaded=config.key_loaded,
    )

    try:
        uvicorn.run(app, host=host, port=port, log_level=config.log_level)
    finally:
        ledger.close()
        logger.info("shutdown_complete")


if __name__ == "__main__":
    main()
