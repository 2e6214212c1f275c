import logging
import sys
import os
from logging.handlers import RotatingFileHandler

import yaml

LOGFILE_MAX_BYTES = 10 * 1024 * 1024
LOGFILE_BACKUP_COUNT = 2


def setup_logging(level=logging.INFO, logfile=None, max_logfile_size_kb=None):
    """Configure root logger with consistent formatting.

    Args:
        level (int): Log level to set for the root logger.
        logfile (str): If specified, log to this file as well as the console.
        max_logfile_size_kb (int): Rotate the logfile at this size (default 10MB).

    Returns:
        logging.Logger: Root logger
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Clear existing handlers to avoid duplicates
    root_logger.handlers = []

    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        "%Y-%m-%d %H:%M:%S"
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if logfile:
        logdir = os.path.dirname(logfile)
        if logdir and not os.path.exists(logdir):
            os.makedirs(logdir)
        max_bytes = max_logfile_size_kb * 1024 if max_logfile_size_kb else LOGFILE_MAX_BYTES
        file_handler = RotatingFileHandler(logfile, maxBytes=max_bytes,
                                           backupCount=LOGFILE_BACKUP_COUNT)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    return root_logger


def load_config(configfile: str) -> dict:
    """ Load the configuration file and check for validity.

    Args:
        configfile (str): Path to the config file

    Returns:
        dict: The loaded configuration

    Raises:
        RuntimeError: If the config file is not found or has no 'ihr' section

    """
    if not os.path.isfile(configfile):
        raise RuntimeError(f'Configfile {configfile} not found')

    with open(configfile, 'r', encoding='UTF-8') as f:
        config_str = f.read()

    config = yaml.safe_load(config_str)

    if not isinstance(config, dict) or not isinstance(config.get('ihr'), dict):
        raise RuntimeError('No ihr section found in config')

    asns = config['ihr'].get('asns')
    if asns is not None and not isinstance(asns, list):
        raise RuntimeError('ihr.asns must be a list of AS numbers')

    return config
