import sys
import time
import json
import logging

from .core import IhrWatch
from .setup import setup_logging, load_config


CONFIGFILE = "config/ihrwatch_config.yaml"
STATUS_LOG_EVERY_SECONDS = 60
LOGFILE_ENABLED_DEFAULT = True
LOGFILE = "logs/ihrwatch.log"


def main() -> int:
    # Configure a basic logger to be able to log even before the configuration is loaded
    setup_logging(level=logging.INFO)
    logger = logging.getLogger(__name__)

    configfile = sys.argv[1] if len(sys.argv) > 1 else CONFIGFILE
    logger.info('Looking for config file at %s', configfile)

    config = load_config(configfile)

    loglevel = config.get('loglevel', 'info')
    logfile_enabled = config.get('logfile_enabled', LOGFILE_ENABLED_DEFAULT)
    log_everything = config.get('log_everything', False)
    max_logfile_size = config.get('max_logfile_size', 200)  # Default 200KB
    logfile_path = config.get('logfile_path', LOGFILE)
    logfile = logfile_path if logfile_enabled else None

    if not logfile_enabled:
        logger.info("Logfile disabled in config. Proceeding without logfile")

    loglevel_mapping = {
        'debug': logging.DEBUG,
        'warning': logging.WARNING,
        'error': logging.ERROR,
        'info': logging.INFO
    }

    setup_logging(level=loglevel_mapping.get(loglevel, logging.INFO), logfile=logfile,
                  max_logfile_size_kb=max_logfile_size)
    logger = logging.getLogger(__name__)

    if not log_everything:
        logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
        logging.getLogger("schedule").setLevel(logging.WARNING)

    watch = IhrWatch(config)

    try:
        watch.refresh()
        while True:
            time.sleep(STATUS_LOG_EVERY_SECONDS)
            if watch.scheduler is None:
                watch.refresh()
            logger.info("Status: %s", json.dumps(watch.get_status()))
    except KeyboardInterrupt:
        print("Shutting down")
    finally:
        watch.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
