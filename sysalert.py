#!/usr/bin/env python3
"""
sysalert.py — Linux Host Monitor & Mail Alerter
Samples CPU, memory, disk, network, service liveness and the system log once
per invocation, mails an alert on every threshold breach, and keeps its own
crontab entry so the next run happens on schedule.
"""

import argparse
import logging
import math
import os
import re
import subprocess
import sys
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import psutil

# ── Defaults ──────────────────────────────────────────────────────────────────
THRESHOLDS = {
    "cpu_percent":     90.0,
    "memory_percent":  90.0,
    "disk_percent":    80,
    "network_bytes":   1_000_000,   # bytes/sec, per direction
}
DEFAULT_SERVICES = ("apache2", "mysql")
DEFAULT_INTERVAL = "* * * * *"

CRON_LOG_FILE    = os.path.join(os.path.expanduser("~"), "sysalert.log")
MONITOR_LOG_FILE = "/var/log/syslog"
ALERT_SUBJECT    = "System Alert"

LOG_PATTERN        = re.compile(r"error|warn", re.IGNORECASE)
LOG_TAIL_LINES     = 5
CPU_SAMPLE_SECONDS = 0.5
NETWORK_WINDOW     = 1.0
MAIL_TIMEOUT       = 30

EXIT_FAILURE = 1
EXIT_USAGE   = 2
EXIT_COMMAND = 3

# ── Logging setup ─────────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("sysalert")


# ── Errors ────────────────────────────────────────────────────────────────────

class SysalertError(Exception):
    """Base for failures that end the run with a specific exit code."""
    exit_code = EXIT_FAILURE


class EnvironmentFault(SysalertError):
    """The host is not in a state the monitor can work with."""
    exit_code = EXIT_FAILURE


class CommandFailure(SysalertError):
    """A critical reading source failed."""
    exit_code = EXIT_COMMAND


@contextmanager
def critical(source: str):
    """Turn any failure of a reading source into a CommandFailure."""
    try:
        yield
    except (psutil.Error, OSError, subprocess.SubprocessError) as exc:
        raise CommandFailure(f"Command '{source}' failed: {exc}") from exc


# ── Configuration ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Config:
    alert_address:     str   = ""
    cpu_threshold:     float = THRESHOLDS["cpu_percent"]
    mem_threshold:     float = THRESHOLDS["memory_percent"]
    disk_threshold:    int   = THRESHOLDS["disk_percent"]
    network_threshold: int   = THRESHOLDS["network_bytes"]
    interval:          str   = DEFAULT_INTERVAL
    services:          Tuple[str, ...] = DEFAULT_SERVICES
    turn_off:          bool  = False

    def cron_arguments(self) -> str:
        """Render the options a scheduled run is invoked with."""
        return (f"-e {self.alert_address} "
                f"-c {_fmt_number(self.cpu_threshold)} "
                f"-m {_fmt_number(self.mem_threshold)} "
                f"-d {self.disk_threshold} "
                f"-n {self.network_threshold} "
                f"-s \"{' '.join(self.services)}\"")


def _fmt_number(value) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _split_services(value: str) -> Tuple[str, ...]:
    # Commas on the command line, spaces in the crontab entry.
    return tuple(name for name in re.split(r"[,\s]+", value) if name)


class _UsageAction(argparse.Action):
    def __init__(self, option_strings, dest=argparse.SUPPRESS,
                 default=argparse.SUPPRESS, help=None):
        super().__init__(option_strings=option_strings, dest=dest,
                         default=default, nargs=0, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        parser.print_help()
        parser.exit(EXIT_USAGE)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="sysalert",
        description="SysAlert — Linux host monitor with mail alerts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
        allow_abbrev=False,
        epilog="""
Examples:
  # Monitor with defaults and install the every-minute crontab entry
  sysalert -e ops@example.com

  # Custom thresholds, services and schedule
  sysalert -e ops@example.com -c 75 -d 90 -s nginx,postgresql -i "*/5 * * * *"

  # Remove the crontab entry and stop monitoring
  sysalert -t
        """,
    )
    p.add_argument("-e", "--email", dest="alert_address", default="",
                   help="Email address for alerts (mandatory)")
    p.add_argument("-c", "--cpu-threshold", type=float,
                   default=THRESHOLDS["cpu_percent"],
                   help=f"CPU usage threshold %% (default: {THRESHOLDS['cpu_percent']:g})")
    p.add_argument("-m", "--mem-threshold", type=float,
                   default=THRESHOLDS["memory_percent"],
                   help=f"Memory usage threshold %% (default: {THRESHOLDS['memory_percent']:g})")
    p.add_argument("-d", "--disk-threshold", type=int,
                   default=THRESHOLDS["disk_percent"],
                   help=f"Disk usage threshold %% (default: {THRESHOLDS['disk_percent']})")
    p.add_argument("-n", "--network-threshold", type=int,
                   default=THRESHOLDS["network_bytes"],
                   help=f"Network usage threshold in bytes/sec (default: {THRESHOLDS['network_bytes']})")
    p.add_argument("-i", "--interval", default=DEFAULT_INTERVAL,
                   help=f"Cron interval (default: \"{DEFAULT_INTERVAL}\")")
    p.add_argument("-s", "--services", type=_split_services,
                   default=DEFAULT_SERVICES,
                   help=f"Comma-separated list of services to monitor (default: {','.join(DEFAULT_SERVICES)})")
    p.add_argument("-t", "--turn-off", action="store_true",
                   help="Turn off monitoring by removing its cron job")
    p.add_argument("-u", "-h", "--help", action=_UsageAction,
                   help="Display usage information")
    return p


def parse_args(argv: Optional[List[str]] = None) -> Config:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.turn_off and not args.alert_address:
        parser.error("alert email is required (-e)")
    return Config(
        alert_address=args.alert_address,
        cpu_threshold=args.cpu_threshold,
        mem_threshold=args.mem_threshold,
        disk_threshold=args.disk_threshold,
        network_threshold=args.network_threshold,
        interval=args.interval,
        services=args.services,
        turn_off=args.turn_off,
    )


# ── Reading sources ───────────────────────────────────────────────────────────

class CPUReader:
    def sample(self) -> float:
        """Return %user + %system over a short sampling window."""
        with critical("cpu_times_percent"):
            times = psutil.cpu_times_percent(interval=CPU_SAMPLE_SECONDS)
        return round(times.user + times.system, 1)


class MemoryReader:
    def sample(self) -> float:
        """Return used / total memory as a percentage, two decimals."""
        with critical("virtual_memory"):
            ram = psutil.virtual_memory()
        if not ram.total:
            raise CommandFailure("Command 'virtual_memory' failed: total memory is 0")
        return round(ram.used / ram.total * 100.0, 2)


class DiskReader:
    def __init__(self, path: str = "/"):
        self.path = path

    def sample(self) -> int:
        """Return used percentage of the filesystem, rounded up like df."""
        with critical("disk_usage"):
            d = psutil.disk_usage(self.path)
        usable = d.used + d.free
        if not usable:
            return 0
        return math.ceil(d.used * 100 / usable)


class NetworkReader:
    def default_interface(self) -> str:
        """Return the interface carrying the default route."""
        with critical("ip route"):
            result = subprocess.run(["ip", "route", "show", "default"],
                                    capture_output=True, text=True, check=True)
        for line in result.stdout.splitlines():
            parts = line.split()
            if parts and parts[0] == "default" and "dev" in parts[:-1]:
                return parts[parts.index("dev") + 1]
        raise EnvironmentFault("No active network interface detected.")

    def counters(self, iface: str) -> Tuple[int, int]:
        """Return cumulative (rx_bytes, tx_bytes) for an interface."""
        with critical("net_io_counters"):
            stats = psutil.net_io_counters(pernic=True).get(iface)
        if stats is None:
            raise CommandFailure(f"Command 'net_io_counters' failed: no counters for {iface}")
        return stats.bytes_recv, stats.bytes_sent


class ServiceChecker:
    def is_active(self, name: str) -> bool:
        try:
            result = subprocess.run(["systemctl", "is-active", "--quiet", name])
        except OSError as exc:
            log.warning("Could not query service %s: %s", name, exc)
            return False
        return result.returncode == 0


class LogScanner:
    def recent_matches(self, path: str) -> Optional[List[str]]:
        """Return the last error/warning lines of a log, or None if it is absent
        or unreadable."""
        if not os.path.exists(path):
            return None
        tail = deque(maxlen=LOG_TAIL_LINES)
        try:
            with open(path, errors="replace") as f:
                for line in f:
                    if LOG_PATTERN.search(line):
                        tail.append(line.rstrip("\n"))
        except OSError as exc:
            log.warning("Unable to read log file %s: %s", path, exc)
            return None
        return list(tail)


class CronTable:
    """The invoking user's crontab, read and replaced as a whole."""

    def read(self) -> List[str]:
        try:
            result = subprocess.run(["crontab", "-l"], capture_output=True, text=True)
        except OSError as exc:
            raise EnvironmentFault(f"Unable to read crontab: {exc}") from exc
        if result.returncode != 0:
            if "no crontab" in result.stderr.lower():
                return []
            raise EnvironmentFault(f"Unable to read crontab: {result.stderr.strip()}")
        return result.stdout.splitlines()

    def write(self, lines: List[str]) -> None:
        content = "".join(line + "\n" for line in lines)
        try:
            result = subprocess.run(["crontab", "-"], input=content,
                                    capture_output=True, text=True)
        except OSError as exc:
            raise EnvironmentFault(f"Unable to write crontab: {exc}") from exc
        if result.returncode != 0:
            raise EnvironmentFault(f"Unable to write crontab: {result.stderr.strip()}")


class Mailer:
    def send(self, recipient: str, subject: str, body: str) -> None:
        subprocess.run(["mail", "-s", subject, recipient], input=body,
                       text=True, timeout=MAIL_TIMEOUT, check=True)


@dataclass
class Probes:
    cpu:      CPUReader      = field(default_factory=CPUReader)
    memory:   MemoryReader   = field(default_factory=MemoryReader)
    disk:     DiskReader     = field(default_factory=DiskReader)
    network:  NetworkReader  = field(default_factory=NetworkReader)
    services: ServiceChecker = field(default_factory=ServiceChecker)
    logs:     LogScanner     = field(default_factory=LogScanner)
    cron:     CronTable      = field(default_factory=CronTable)
    mailer:   Mailer         = field(default_factory=Mailer)


# ── Alert dispatch ────────────────────────────────────────────────────────────

class AlertDispatcher:
    def __init__(self, recipient: str, mailer: Mailer, subject: str = ALERT_SUBJECT):
        self.recipient = recipient
        self.mailer = mailer
        self.subject = subject

    def send_alert(self, message: str) -> bool:
        """Mail one alert. A failed delivery is logged, never raised."""
        log.warning("Sending alert: %s", message)
        try:
            self.mailer.send(self.recipient, self.subject, message)
        except (OSError, subprocess.SubprocessError) as exc:
            log.error("Failed to send email alert: %s", exc)
            return False
        return True


# ── Crontab registration ──────────────────────────────────────────────────────

def cron_entry(config: Config, script_path: str, log_file: str = CRON_LOG_FILE) -> str:
    return (f"{config.interval} {script_path} {config.cron_arguments()} "
            f">> {log_file} 2>&1")


def cron_command(line: str) -> Optional[str]:
    """Return the program a crontab line runs, or None for comments,
    blank lines and variable assignments."""
    parts = line.split()
    if not parts or parts[0].startswith("#"):
        return None
    if parts[0].startswith("@"):
        command = parts[1:]
    else:
        command = parts[5:]
    return command[0] if command else None


def runs_script(line: str, script_path: str) -> bool:
    return cron_command(line) == script_path


def ensure_registered(config: Config, table: CronTable, script_path: str,
                      log_file: str = CRON_LOG_FILE) -> bool:
    """Append this program's crontab entry unless one is already there."""
    lines = table.read()
    if any(runs_script(line, script_path) for line in lines):
        log.info("Cron job already exists. Skipping setup.")
        return False
    table.write(lines + [cron_entry(config, script_path, log_file)])
    log.info("Cron job added with interval: %s", config.interval)
    return True


def deregister(table: CronTable, script_path: str) -> int:
    """Drop every crontab line that runs this program; return how many."""
    lines = table.read()
    kept = [line for line in lines if not runs_script(line, script_path)]
    removed = len(lines) - len(kept)
    if removed:
        table.write(kept)
    log.info("Removed %d cron job(s). Monitoring is now turned off.", removed)
    return removed


def ensure_log_destination(path: str) -> None:
    """Create the cron output log if needed; it must end up writable."""
    if not os.path.exists(path):
        log.info("File %s does not exist. Creating it...", path)
        try:
            open(path, "a").close()
        except OSError as exc:
            raise EnvironmentFault(f"Unable to create {path}: {exc}") from exc
    elif not os.path.isfile(path):
        raise EnvironmentFault(f"File {path} is not a regular file.")
    elif not os.access(path, os.W_OK):
        raise EnvironmentFault(f"File {path} is not writable.")


# ── Sampling ──────────────────────────────────────────────────────────────────

def _alert(metric: str, value, threshold, message: str) -> dict:
    return {
        "metric":    metric,
        "value":     value,
        "threshold": threshold,
        "message":   message,
    }


class Monitor:
    """Runs every check once, in a fixed order, against one Config."""

    def __init__(self, config: Config, probes: Probes,
                 monitor_log: str = MONITOR_LOG_FILE,
                 sleep: Callable[[float], None] = time.sleep,
                 dispatcher: Optional[AlertDispatcher] = None):
        self.config = config
        self.probes = probes
        self.monitor_log = monitor_log
        self.sleep = sleep
        self.dispatcher = dispatcher or AlertDispatcher(config.alert_address, probes.mailer)

    def _breach(self, metric, value, threshold, message) -> dict:
        self.dispatcher.send_alert(message)
        return _alert(metric, value, threshold, message)

    def check_cpu(self) -> Optional[dict]:
        cpu = self.probes.cpu.sample()
        log.info("Current CPU usage: %s%%", cpu)
        if cpu > self.config.cpu_threshold:
            return self._breach("cpu_percent", cpu, self.config.cpu_threshold,
                               f"High CPU usage: {cpu}%")
        return None

    def check_memory(self) -> Optional[dict]:
        mem = self.probes.memory.sample()
        log.info("Current Memory usage: %.2f%%", mem)
        if mem > self.config.mem_threshold:
            return self._breach("memory_percent", mem, self.config.mem_threshold,
                               f"High Memory usage: {mem:.2f}%")
        return None

    def check_disk(self) -> Optional[dict]:
        disk = self.probes.disk.sample()
        log.info("Current Disk usage: %d%%", disk)
        if disk > self.config.disk_threshold:
            return self._breach("disk_percent", disk, self.config.disk_threshold,
                               f"High Disk usage: {disk}%")
        return None

    def check_network(self) -> Optional[dict]:
        net = self.probes.network
        iface = net.default_interface()
        log.info("Monitoring network usage on interface: %s", iface)
        rx_before, tx_before = net.counters(iface)
        self.sleep(NETWORK_WINDOW)
        rx_after, tx_after = net.counters(iface)
        rx_rate = rx_after - rx_before
        tx_rate = tx_after - tx_before
        log.info("Receive rate: %d bytes/sec, Transmit rate: %d bytes/sec", rx_rate, tx_rate)
        limit = self.config.network_threshold
        if rx_rate > limit or tx_rate > limit:
            return self._breach(
                "network_bytes", {"rx": rx_rate, "tx": tx_rate}, limit,
                f"High network usage detected: RX={rx_rate} bytes/sec, TX={tx_rate} bytes/sec")
        return None

    def check_services(self) -> Optional[dict]:
        failed = []
        for service in self.config.services:
            if self.probes.services.is_active(service):
                log.info("Service %s is running.", service)
            else:
                log.info("Service %s is not active.", service)
                failed.append(service)
        if not failed:
            return None
        message = "The following services are not active:\n" + "\n".join(failed)
        return self._breach("services", failed, None, message)

    def check_logs(self) -> Optional[dict]:
        lines = self.probes.logs.recent_matches(self.monitor_log)
        if lines is None:
            log.info("Log file %s is not available. Skipping log monitoring.", self.monitor_log)
            return None
        if not lines:
            return None
        return self._breach("log_lines", lines, None, "Log alerts:\n" + "\n".join(lines))

    def run_checks(self) -> List[dict]:
        """Run CPU, memory, disk, network, service and log checks in order."""
        alerts = []
        for check in (self.check_cpu, self.check_memory, self.check_disk,
                      self.check_network, self.check_services, self.check_logs):
            alert = check()
            if alert is not None:
                alerts.append(alert)
        return alerts


# ── Orchestration ─────────────────────────────────────────────────────────────

def run(config: Config, script_path: str, probes: Optional[Probes] = None,
        cron_log: str = CRON_LOG_FILE, monitor_log: str = MONITOR_LOG_FILE,
        sleep: Callable[[float], None] = time.sleep) -> List[dict]:
    """One invocation: either turn off, or register and run every check."""
    probes = probes or Probes()

    if config.turn_off:
        log.info("Turning off monitoring and removing its cron job...")
        deregister(probes.cron, script_path)
        return []

    ensure_log_destination(cron_log)
    log.info("Starting SysAlert — services=%s interval=%r",
             ",".join(config.services), config.interval)
    ensure_registered(config, probes.cron, script_path, cron_log)

    alerts = Monitor(config, probes, monitor_log=monitor_log, sleep=sleep).run_checks()
    log.info("Run complete: %d alert(s).", len(alerts))
    return alerts


def main(argv: Optional[List[str]] = None) -> None:
    config = parse_args(argv)
    script_path = os.path.realpath(sys.argv[0])

    try:
        run(config, script_path)
    except SysalertError as exc:
        log.error("%s Exiting.", exc)
        sys.exit(exc.exit_code)
    except KeyboardInterrupt:
        log.error("SysAlert interrupted.")
        sys.exit(EXIT_FAILURE)
    except Exception:
        log.exception("An unexpected error occurred. Exiting...")
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    main()
