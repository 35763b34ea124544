import sys
import argparse
from loguru import logger

from .config import load_config
from .errors import ConfigurationError
from .mqtt.connection import MqttConnection
from .orchestrator import EXIT_STARTUP_FAILURE, Orchestrator
from .routing.table import RemapTable


def create_parser():
    parser = argparse.ArgumentParser(
        description="MQTT topic remapper",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--config",
        type=str,
        default="config.toml",
        metavar="FILE",
        help="TOML (or YAML) config file",
    )

    return parser


def setup_logging(level: str):
    # Unknown level names raise ValueError here, while the current sink is still in place.
    logger.level(level)
    logger.remove()
    logger.add(sys.stderr, level=level, colorize=True)
    logger.info(f"Logger level set to: {level}")


def main(argv=None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        table = RemapTable.build(config.rules)
        setup_logging(config.log_level)
    except ConfigurationError as e:
        logger.critical(f"Error loading config file: {e}")
        return EXIT_STARTUP_FAILURE
    except ValueError as e:
        # loguru rejects unknown level names
        logger.critical(f"Invalid logging configuration: {e}")
        return EXIT_STARTUP_FAILURE

    logger.info(f"Loaded config: {len(table)} remap(s).")
    for rule in table:
        logger.debug(f"Remap {rule}")

    connection = MqttConnection(config.broker, config.retry)
    orchestrator = Orchestrator(table, connection, config.router)
    return orchestrator.run()


if __name__ == "__main__":
    sys.exit(main())
