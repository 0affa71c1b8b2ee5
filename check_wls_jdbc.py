#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
check_wls_jdbc.py - Icinga/Nagios plugin for WebLogic JDBC datasource pools.

Reads the JDBC datasource runtime MBeans of a WebLogic server through the
RESTful Management Services and reports connection pool availability.

For every selected datasource:
    - CRITICAL when available connections are <= 10% of the peak available
    - WARNING when unavailable connections are >= 10% of the peak available
    - OK otherwise

Exit codes:
    0 = OK
    1 = WARNING
    2 = CRITICAL
    3 = UNKNOWN
"""

import argparse
import json
import sys
import traceback
from dataclasses import dataclass
from enum import IntEnum

try:
    import requests
    import urllib3
    from requests.auth import HTTPBasicAuth
except ImportError:
    print("UNKNOWN - requests is not installed. Install it with: pip install 'requests>=2.25'")
    sys.exit(3)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

__version__ = "26.10.19"


class Status(IntEnum):
    """Plugin status, ordered by severity. Values are the exit codes."""

    OK = 0
    WARNING = 1
    CRITICAL = 2
    UNKNOWN = 3


WILDCARD = "*"
MESSAGE_PREFIX = "availability: "

# Performance line field name -> datasource runtime MBean attribute
POOL_ATTRIBUTES = (
    ("capacity", "CurrCapacity"),
    ("active", "ActiveConnectionsCurrentCount"),
    ("waiting", "WaitingForConnectionCurrentCount"),
    ("available", "NumAvailable"),
    ("unavailable", "NumUnavailable"),
    ("highestAvailable", "HighestNumAvailable"),
    ("maxWait", "WaitSecondsHighCount"),
)

REST_BASE_PATH = "/management/weblogic/latest"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class SelectorError(ValueError):
    """The datasource selector string is malformed."""


class AccessorError(Exception):
    """The management interface could not be reached or read."""


class AttributeTypeError(AccessorError):
    """An attribute did not hold a value of the expected type."""


# ---------------------------------------------------------------------------
# PoolSelector
# ---------------------------------------------------------------------------

class PoolSelector:
    """Datasource names to monitor, each with a free-form label.

    Parsed from a pipe separated list of ``name,label`` pairs, for example
    ``jdbc/OrdersDS,orders|jdbc/BillingDS,billing``. The name ``*`` selects
    every datasource. Names are used as given, surrounding whitespace
    included. Trailing empty entries (``ds1,a|``) are ignored; an empty
    entry anywhere else is an error.
    """

    def __init__(self, entries):
        self.entries = dict(entries)

    @classmethod
    def parse(cls, text):
        if text is None or not text.strip():
            raise SelectorError("datasource selector is empty")
        items = text.split("|")
        while items and not items[-1]:
            items.pop()
        if not items:
            raise SelectorError("datasource selector is empty")
        entries = {}
        for item in items:
            if "," not in item:
                raise SelectorError(
                    f"invalid datasource entry '{item}': expected 'name,label'"
                )
            name, label = item.split(",", 1)
            if not name:
                raise SelectorError(f"invalid datasource entry '{item}': empty name")
            entries[name] = label
        return cls(entries)

    @property
    def wildcard(self):
        return WILDCARD in self.entries

    def matches(self, name):
        return self.wildcard or name in self.entries

    def __len__(self):
        return len(self.entries)

    def __repr__(self):
        return f"PoolSelector({self.entries!r})"


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PoolSnapshot:
    """Runtime attributes of one datasource, as read at check time."""

    capacity: int
    active: int
    waiting: int
    available: int
    unavailable: int
    highest_available: int
    max_wait: int

    def perf_line(self):
        return (
            f"capacity={self.capacity} "
            f"active={self.active} "
            f"waiting={self.waiting} "
            f"available={self.available} "
            f"unavailable={self.unavailable} "
            f"highestAvailable={self.highest_available} "
            f"maxWait={self.max_wait}s"
        )


@dataclass(frozen=True)
class CheckResult:
    status: Status
    output: tuple = ()
    messages: tuple = ()
    message: str = ""
    details: tuple = ()


# ---------------------------------------------------------------------------
# PoolAccessor - typed read access to datasource runtime MBeans
# ---------------------------------------------------------------------------

class PoolAccessor:
    """Read-only access to the datasource runtime handles of a server.

    Subclasses implement ``pool_handles``, ``handle_name`` and
    ``get_attribute``. ``get_int`` adds the type check on top.
    """

    def pool_handles(self):
        raise NotImplementedError

    def handle_name(self, handle):
        raise NotImplementedError

    def get_attribute(self, handle, attribute):
        raise NotImplementedError

    def get_int(self, handle, attribute):
        value = self.get_attribute(handle, attribute)
        # bool is an int subclass but never a valid counter
        if isinstance(value, bool) or not isinstance(value, int):
            raise AttributeTypeError(
                f"attribute {attribute} of {self.handle_name(handle)} is not an "
                f"integer: {value!r}"
            )
        return value

    def read_snapshot(self, handle):
        values = [self.get_int(handle, attribute) for _, attribute in POOL_ATTRIBUTES]
        return PoolSnapshot(*values)


class WLSRestAccessor(PoolAccessor):
    """PoolAccessor backed by the WebLogic RESTful Management Services.

    Without ``server`` the runtime tree of the queried server itself is read
    (``serverRuntime``). With ``server`` the request goes through the admin
    server's domain runtime tree to the named managed server.

    The datasource collection is fetched once, on the first call to
    ``pool_handles``; every handle is one JSON item of that collection.
    """

    def __init__(self, host, port=7001, username=None, password=None,
                 server=None, tls=False, tls_insecure=False, timeout=10,
                 session=None):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.server = server
        self.tls = tls
        self.tls_insecure = tls_insecure
        self.timeout = timeout
        self.session = session or requests.Session()
        self._items = None

    @property
    def base_url(self):
        scheme = "https" if self.tls else "http"
        return f"{scheme}://{self.host}:{self.port}{REST_BASE_PATH}"

    @property
    def collection_url(self):
        if self.server:
            runtime = f"domainRuntime/serverRuntimes/{self.server}"
        else:
            runtime = "serverRuntime"
        return f"{self.base_url}/{runtime}/JDBCServiceRuntime/JDBCDataSourceRuntimeMBeans"

    @staticmethod
    def rest_name(attribute):
        """MBean attribute name to REST property name (CurrCapacity -> currCapacity)."""
        return attribute[:1].lower() + attribute[1:]

    def _build_request_kwargs(self):
        fields = ["name"] + [self.rest_name(a) for _, a in POOL_ATTRIBUTES]
        kwargs = {
            "params": {"fields": ",".join(fields), "links": "none"},
            "headers": {"Accept": "application/json"},
            "timeout": self.timeout,
        }
        if self.username:
            kwargs["auth"] = HTTPBasicAuth(self.username, self.password or "")
        if self.tls and self.tls_insecure:
            # stderr ends up in the plugin output
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            kwargs["verify"] = False
        return kwargs

    def fetch(self):
        """Fetch the datasource runtime collection. Returns the list of items."""
        url = self.collection_url
        try:
            response = self.session.get(url, **self._build_request_kwargs())
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise AccessorError(f"cannot read {url}: {e}") from e
        except ValueError as e:
            raise AccessorError(f"invalid JSON from {url}: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("items"), list):
            raise AccessorError(f"unexpected response from {url}: no 'items' collection")
        return data["items"]

    def pool_handles(self):
        if self._items is None:
            self._items = self.fetch()
        return list(self._items)

    def handle_name(self, handle):
        name = handle.get("name")
        if not isinstance(name, str):
            raise AttributeTypeError(f"datasource runtime without a name: {handle!r}")
        return name

    def get_attribute(self, handle, attribute):
        key = self.rest_name(attribute)
        if key not in handle:
            raise AccessorError(
                f"attribute {attribute} not found on datasource {self.handle_name(handle)}"
            )
        return handle[key]

    def close(self):
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


# ---------------------------------------------------------------------------
# PoolThresholds
# ---------------------------------------------------------------------------

class PoolThresholds:
    """Classification thresholds, in percent of the peak available count.

    JSON format accepted by ``from_json``:
        {
            "available_pct": {"critical": <float>},
            "unavailable_pct": {"warning": <float>}
        }

    Missing keys keep the defaults (10 and 10).
    """

    DEFAULT_CRITICAL_AVAILABLE = 10.0
    DEFAULT_WARNING_UNAVAILABLE = 10.0

    def __init__(self, critical_available=DEFAULT_CRITICAL_AVAILABLE,
                 warning_unavailable=DEFAULT_WARNING_UNAVAILABLE):
        self.critical_available = critical_available
        self.warning_unavailable = warning_unavailable

    @classmethod
    def from_json(cls, json_str):
        """Parse a JSON string into PoolThresholds."""
        if not json_str:
            return cls()
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON for --thresholds: {e}")
        if not isinstance(data, dict):
            raise ValueError("--thresholds must be a JSON object")
        kwargs = {}
        for key, level, arg in (("available_pct", "critical", "critical_available"),
                                ("unavailable_pct", "warning", "warning_unavailable")):
            cfg = data.get(key, {})
            if not isinstance(cfg, dict):
                raise ValueError(f"--thresholds: '{key}' must be a JSON object")
            if level in cfg:
                value = cfg[level]
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    raise ValueError(f"--thresholds: {key}.{level} must be a number")
                kwargs[arg] = float(value)
        return cls(**kwargs)

    def classify(self, name, snapshot):
        """Classify one datasource. Returns (status, reason)."""
        highest = snapshot.highest_available
        if highest == 0:
            return Status.CRITICAL, f"{name} - no connection ever available (highestAvailable=0)"

        percent_available = snapshot.available / highest * 100
        percent_unavailable = snapshot.unavailable / highest * 100

        if percent_available <= self.critical_available:
            return Status.CRITICAL, (
                f"{name} - {int(percent_available)}% available "
                f"({snapshot.available}/{highest} available)"
            )
        if percent_unavailable >= self.warning_unavailable:
            return Status.WARNING, (
                f"{name} - {int(percent_unavailable)}% unavailable "
                f"({snapshot.unavailable}/{highest} unavailable)"
            )
        # OK reasons are reported too, the message lists every selected pool
        return Status.OK, (
            f"{name} - {int(percent_unavailable)}% unavailable - "
            f"{int(percent_available)}% available"
        )


# ---------------------------------------------------------------------------
# DataSourcePoolCheck
# ---------------------------------------------------------------------------

class DataSourcePoolCheck:
    """Evaluates JDBC datasource pool availability on one server."""

    def __init__(self, thresholds=None, verbose=False):
        self.thresholds = thresholds or PoolThresholds()
        self.verbose = verbose

    def evaluate(self, selector, accessor):
        """Run the check. Never raises; failures come back as UNKNOWN."""
        details = []
        try:
            if not isinstance(selector, PoolSelector):
                selector = PoolSelector.parse(selector)

            status = Status.OK
            output = []
            messages = []
            for handle in accessor.pool_handles():
                name = accessor.handle_name(handle)
                if not selector.matches(name):
                    if self.verbose:
                        details.append(f"[INFO] skipped datasource {name} (not selected)")
                    continue

                snapshot = accessor.read_snapshot(handle)
                output.append(snapshot.perf_line())

                pool_status, reason = self.thresholds.classify(name, snapshot)
                messages.append(reason)
                if pool_status in (Status.WARNING, Status.CRITICAL):
                    status = max(status, pool_status)
        except Exception as e:
            if self.verbose:
                details.append(traceback.format_exc().rstrip())
            return CheckResult(
                status=Status.UNKNOWN,
                message=f"{type(e).__name__}: {e}",
                details=tuple(details),
            )

        if self.verbose:
            details.append(f"[INFO] {len(output)} datasource(s) evaluated")
        return CheckResult(
            status=status,
            output=tuple(output),
            messages=tuple(messages),
            message=MESSAGE_PREFIX + ", ".join(messages),
            details=tuple(details),
        )


# ---------------------------------------------------------------------------
# IcingaOutput - formats plugin output
# ---------------------------------------------------------------------------

class IcingaOutput:
    """Formats output compliant with Icinga/Nagios plugin specification."""

    def __init__(self):
        self.status = Status.OK
        self.message = ""
        self.perfdata = []
        self.long_output = []

    def set_result(self, result):
        """Take status, message, perfdata and details from a CheckResult."""
        self.status = result.status
        self.message = result.message
        self.perfdata = list(result.output)
        self.long_output.extend(result.details)

    def set_error(self, message):
        self.status = Status.UNKNOWN
        self.message = message
        self.perfdata = []

    def add_long_output(self, line):
        """Add a line to the long (multi-line) output."""
        self.long_output.append(line)

    def get_output(self):
        """Return the formatted plugin output string."""
        summary = self.message or "No issues detected"
        first_line = f"{self.status.name} - {summary}"
        if self.perfdata:
            first_line += " | " + " ".join(self.perfdata)
        lines = [first_line]
        if self.long_output:
            lines.extend(self.long_output)
        return "\n".join(lines)

    def exit(self):
        """Print output and exit with appropriate code."""
        print(self.get_output())
        sys.exit(int(self.status))


# ---------------------------------------------------------------------------
# Argument Parsing
# ---------------------------------------------------------------------------

def parse_arguments(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Icinga/Nagios plugin for WebLogic JDBC datasource pools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Datasource selector (--datasources):
  A pipe separated list of name,label pairs, or *,label for all datasources.
  Perfdata labels (capacity, active, ...) are the same for every datasource,
  so when several are selected Icinga keeps only one value per label. Select
  one datasource per service to graph each pool.

Examples:
  # All datasources of the server answering on host1:7001
  %(prog)s --host host1 --port 7001 -u monitor -p secret

  # Two datasources of managed server ms1, through the admin server
  %(prog)s --host admin1 --server ms1 -u monitor -p secret \\
           --datasources 'jdbc/OrdersDS,orders|jdbc/BillingDS,billing'

  # Custom thresholds
  %(prog)s --host host1 -u monitor -p secret \\
           --thresholds '{"available_pct": {"critical": 5}, "unavailable_pct": {"warning": 20}}'

Exit codes:
  0 = OK       - All selected pools have enough available connections
  1 = WARNING  - Unavailable connections above threshold on a pool
  2 = CRITICAL - Available connections below threshold on a pool
  3 = UNKNOWN  - Management interface unreachable or plugin error
        """
    )

    parser.add_argument("--version", action="version",
                        version=f"%(prog)s {__version__}")

    # Connection
    parser.add_argument("--host", required=True,
                        help="WebLogic server host name")
    parser.add_argument("--port", type=int, default=7001,
                        help="WebLogic server listen port (default: 7001)")
    parser.add_argument("--username", "-u", default=None,
                        help="Username for authentication")
    parser.add_argument("--password", "-p", default=None,
                        help="Password for authentication")
    parser.add_argument("--tls", action="store_true", default=False,
                        help="Use https")
    parser.add_argument("--tls-insecure", action="store_true", default=False,
                        help="Disable TLS certificate verification")
    parser.add_argument("--timeout", type=int, default=10,
                        help="HTTP timeout in seconds (default: 10)")
    parser.add_argument("--server", default=None,
                        help="Managed server name, read through the admin server domain runtime")

    # Check parameters
    parser.add_argument("--datasources", "-d", default="*,all",
                        help="Datasource selector, e.g. 'ds1,label|ds2,label' (default: '*,all'); "
                             "select one datasource per service for per-pool graphs")
    parser.add_argument("--thresholds", type=str, default=None,
                        help='JSON thresholds, e.g. '
                             '\'{"available_pct": {"critical": 10}, '
                             '"unavailable_pct": {"warning": 10}}\'')

    parser.add_argument("--verbose", "-v", action="store_true", default=False,
                        help="Enable verbose output for debugging")

    args = parser.parse_args(argv)

    try:
        args.pool_thresholds = PoolThresholds.from_json(args.thresholds)
    except ValueError as e:
        parser.error(str(e))

    return args


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main(argv=None):
    """Main entry point."""
    output = IcingaOutput()

    try:
        args = parse_arguments(argv)

        check = DataSourcePoolCheck(
            thresholds=args.pool_thresholds,
            verbose=args.verbose,
        )
        with WLSRestAccessor(
            host=args.host,
            port=args.port,
            username=args.username,
            password=args.password,
            server=args.server,
            tls=args.tls,
            tls_insecure=args.tls_insecure,
            timeout=args.timeout,
        ) as accessor:
            result = check.evaluate(args.datasources, accessor)

        output.set_result(result)

    except SystemExit:
        # argparse calls sys.exit - re-raise to avoid catching it
        raise
    except Exception as e:
        output.set_error(f"Plugin error: {e}")
        raw_args = sys.argv[1:] if argv is None else argv
        if "--verbose" in raw_args or "-v" in raw_args:
            output.add_long_output(traceback.format_exc())

    output.exit()


if __name__ == "__main__":
    main()
