#!/usr/bin/env python3
# PURPOSE: Main entry point. Finds which local process sends traffic to a destination.
# ==============================================================================
import argparse
import logging
import os
import signal
import sys

from interface_selector import detect_egress_interface, select_interface
from core.action import ActionRunner
from core.classifier import Classifier, make_tag
from core.commands import check_dependencies, check_privileges, required_binaries
from core.correlator import EventCorrelator, publish_result, report_result
from core.data_models import RunConfig, TrafficFilter, data_lock, run_info
from core.errors import ConfigurationError, NetblameError
from core.lifecycle import InstanceLock, LifecycleManager
from core.resolver import make_resolver
from core.shaping import ShapingController
from core.stream import LogStream

__version__ = "0.1.0"

logger = logging.getLogger("netblame")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="netblame",
        description="Attribute outbound traffic to a destination to the local process sending it. "
                    "WARNING: replaces the root qdisc of the egress interface while running.")
    parser.add_argument("-d", "--destination", required=True, help="destination IPv4 address")
    parser.add_argument("-p", "--port", type=int, help="destination port (default: any)")
    parser.add_argument("--tcp", action="store_true", help="monitor TCP")
    parser.add_argument("--udp", action="store_true", help="monitor UDP")
    parser.add_argument("--tcp-new-only", action="store_true",
                        help="only log packets opening a new TCP connection")
    parser.add_argument("--delay", type=int, default=500, metavar="MS",
                        help="delay injected into matching packets (default: 500)")
    parser.add_argument("--rate", type=int, default=20, metavar="N",
                        help="max log events per minute per source port (default: 20)")
    parser.add_argument("-a", "--action", help="executable run as '<action> <pid>' for each result")
    parser.add_argument("-i", "--interface", help="egress interface (default: from routing table)")
    parser.add_argument("--select-interface", action="store_true",
                        help="choose the egress interface interactively")
    parser.add_argument("--log-file", help="follow this syslog file instead of the kernel journal")
    parser.add_argument("--resolver", choices=("psutil", "lsof"), default="psutil")
    parser.add_argument("--lock-file", default="/run/netblame.lock")
    parser.add_argument("--web-port", type=int, help="serve live results on 127.0.0.1:PORT")
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def config_from_args(args) -> RunConfig:
    protocols = tuple(p for p in ("tcp", "udp") if getattr(args, p))
    if not protocols:
        raise ConfigurationError("Select at least one protocol with --tcp and/or --udp.")
    if args.action and not (os.path.isfile(args.action) and os.access(args.action, os.X_OK)):
        raise ConfigurationError(f"Action {args.action!r} is not an executable file.")
    traffic_filter = TrafficFilter(
        destination=args.destination,
        port=args.port,
        protocols=protocols,
        tcp_new_only=args.tcp_new_only,
    )
    return RunConfig(
        filter=traffic_filter,
        delay_ms=args.delay,
        rate_per_minute=args.rate,
        action=args.action,
        interface=args.interface,
        log_file=args.log_file,
        resolver=args.resolver,
        lock_path=args.lock_file,
        web_port=args.web_port,
        verbose=args.verbose,
    )


def build_lifecycle(config: RunConfig, interface: str, tag: str) -> LifecycleManager:
    sinks = [report_result, publish_result]
    if config.action:
        sinks.append(ActionRunner(config.action))
    return LifecycleManager(
        lock=InstanceLock(config.lock_path),
        shaping=ShapingController(config.filter, config.delay_ms, interface),
        classifier=Classifier(config.filter, config.rate_per_minute, tag),
        correlator=EventCorrelator(tag, make_resolver(config.resolver), sinks),
        stream=LogStream(config.log_file),
    )


def log_level(verbose: bool) -> int:
    """Diagnostics stay quiet unless -v; results are printed regardless."""
    return logging.DEBUG if verbose else logging.WARNING


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=log_level(args.verbose),
                        format='%(asctime)s - %(levelname)s - %(message)s')
    try:
        config = config_from_args(args)
        check_privileges()
        check_dependencies(required_binaries(config.log_file, config.resolver))

        if config.interface:
            interface = config.interface
        elif args.select_interface:
            interface = select_interface()
        else:
            interface = detect_egress_interface()

        tag = make_tag()
        lifecycle = build_lifecycle(config, interface, tag)
        signal.signal(signal.SIGINT, lifecycle.handle_signal)
        signal.signal(signal.SIGTERM, lifecycle.handle_signal)

        with data_lock:
            run_info.update(interface=interface, destination=config.filter.destination, tag=tag)
        if config.web_port:
            from web.api import start_web_server
            start_web_server(config.web_port)
            print(f"==> Live results at: http://127.0.0.1:{config.web_port} <==")

        logger.info("Watching %s%s on %s (tag %s)", config.filter.destination,
                    f":{config.filter.port}" if config.filter.port else "", interface, tag)
        lifecycle.run()
    except NetblameError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code
    print("Monitoring stopped.")
    return 0


if __name__ == '__main__':
    sys.exit(main())
