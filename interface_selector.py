# FILE: interface_selector.py
# PURPOSE: Finds the egress interface, automatically or by asking the user.
import socket
import sys

import psutil
from scapy.all import conf

from core.errors import SetupFailure

PROBE_DESTINATION = "8.8.8.8"


def detect_egress_interface(probe: str = PROBE_DESTINATION) -> str:
    """
    Asks the routing table which interface traffic towards `probe` leaves by.
    Same routing table, same answer.
    """
    try:
        iface, src_ip, _gateway = conf.route.route(probe)
    except Exception as e:
        raise SetupFailure(f"Route lookup towards {probe} failed: {e}") from e
    name = str(iface)
    if not name or src_ip == "0.0.0.0":
        raise SetupFailure(f"No route towards {probe}; pass --interface explicitly.")
    return name


def select_interface():
    """
    Lists all network interfaces with their status (online/offline).
    Returns the name of the selected interface.
    """
    try:
        interfaces_addrs = psutil.net_if_addrs()
        interfaces_stats = psutil.net_if_stats()
        interface_list = list(interfaces_addrs.keys())
    except Exception as e:
        raise SetupFailure(f"Unable to retrieve interfaces: {e}") from e

    if not interface_list:
        raise SetupFailure("No network interfaces found on this system.")

    print("Please select the interface the target traffic leaves through:")
    for i, iface_name in enumerate(interface_list):
        status_text = "[OFF]"
        if iface_name in interfaces_stats and interfaces_stats[iface_name].isup:
            status_text = "[ON]"

        ip_address = ""
        for addr in interfaces_addrs.get(iface_name, []):
            if addr.family == socket.AF_INET:
                ip_address = f"(IP: {addr.address})"
                break

        print(f"  {i + 1}: {status_text} {iface_name} {ip_address}")

    while True:
        try:
            choice = int(input(f"Enter the number (1-{len(interface_list)}): "))
            if 1 <= choice <= len(interface_list):
                return interface_list[choice - 1]
            print("Invalid number. Please try again.")
        except ValueError:
            print("Invalid input. Please enter a number.")
        except (EOFError, KeyboardInterrupt):
            print("\nSelection cancelled. Exiting.")
            sys.exit(0)
