import argparse
import asyncio
import logging
import signal
import sys

from colorama import Fore, Style

from .config import CONFIG, load_settings
from .errors import ConfigError, SubmitError
from .fleet import MODE_PRESIGN, MODE_RETRY, MODES, build_fleet
from .logs import print_error, print_info, print_success, print_warning, setup_logging

logger = logging.getLogger("mintrace")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="mintrace", description="Mint with every wallet as soon as the window opens.")
    parser.add_argument("mode", nargs="?", choices=MODES, default=MODE_RETRY,
                        help="retry: sign at window open; pre-sign: sign during the countdown")
    parser.add_argument("--env-file", default=CONFIG["ENV_FILE"])
    parser.add_argument("--keys-file", default=None, help=f"default: {CONFIG['PRIVATE_KEY_FILE']}")
    parser.add_argument("--contract-file", default=None, help=f"default: {CONFIG['CONTRACT_FILE']}")
    parser.add_argument("--proofs-file", default=None, help="JSON map of address -> proof nodes")
    parser.add_argument("--live", dest="live", action="store_true", default=True, help="redraw the status table every second")
    parser.add_argument("--no-live", dest="live", action="store_false")
    parser.add_argument("--log-level", default=None)
    return parser.parse_args(argv)


async def run(args) -> int:
    settings = load_settings(args.env_file, args.keys_file, args.contract_file, args.proofs_file)
    print(f"🚀  Starting {Fore.MAGENTA}mintrace{Fore.RESET} in {Fore.CYAN}{args.mode}{Fore.RESET} mode "
          f"with {len(settings.private_keys)} wallet(s){Style.RESET_ALL}")
    print_info(f"Contract: {settings.contract_address} | Fee: {settings.launchpad_fee} wei")

    fleet = await build_fleet(settings, mode=args.mode, live=args.live)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, fleet.window.close)
    except (NotImplementedError, RuntimeError):
        logger.debug("Signal handlers unavailable, Ctrl-C will abort instead of closing the window")

    try:
        summary = await fleet.run()
    finally:
        if fleet.pool is not None:
            fleet.pool.close()

    print(fleet.board.render("Finished"))
    line = f"Eligible: {summary.eligible_count} | Successful: {summary.success_count}/{summary.total_count}"
    if summary.success_count:
        print_success(line)
    else:
        print_warning(line)
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)
    if args.mode == MODE_PRESIGN:
        logger.info("Pre-sign mode: payloads are re-signed on every gas refresh during the countdown")
    try:
        return asyncio.run(run(args))
    except ConfigError as e:
        print_error(f"Configuration error: {e}")
        return 1
    except SubmitError as e:
        print_error(f"Could not reach the network: {e.message}")
        return 1
    except KeyboardInterrupt:
        print_warning("\nScript interrupted by user. Exiting...")
        return 130


if __name__ == "__main__":
    sys.exit(main())
