import logging
import os

from colorama import Fore, Style, init

init(autoreset=True)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
LOG_DATEFMT = "%H:%M:%S"


def setup_logging(level=None):
    """Configure the root logger the same way for the CLI and scripts."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    # web3 and urllib3 are chatty at INFO
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def short_address(address):
    return f"{address[:6]}...{address[-4:]}" if address else "Unknown address"


def short_hash(tx_hash):
    return f"{tx_hash[:6]}...{tx_hash[-4:]}" if tx_hash else "N/A"


def print_color(message, color=None):
    if color:
        print(f"{color}{message}{Style.RESET_ALL}")
    else:
        print(message)


def print_info(message):
    print_color(message)


def print_success(message):
    print_color(message, Fore.GREEN)


def print_error(message):
    print_color(message, Fore.RED)


def print_warning(message):
    print_color(message, Fore.YELLOW)
