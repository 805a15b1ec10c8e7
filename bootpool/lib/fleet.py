from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from . import net
from .command import Runner, run_cmd
from .env import PATHS, Paths

logger = logging.getLogger(__name__)


def read_bootparams(runner: Runner = run_cmd) -> Dict[str, str]:
    """Parse bootparams(8) key=value output."""

    r = runner(["bootparams"], check=False)
    params: Dict[str, str] = {}
    for ln in r.stdout.splitlines():
        if "=" not in ln:
            continue
        k, _, v = ln.partition("=")
        params[k.strip()] = v.strip()
    return params


@dataclass
class FleetClient:
    """Narrow view of the fleet services a compute node consults."""

    runner: Runner = run_cmd
    paths: Paths = PATHS
    _default_pi: Optional[str] = field(default=None, init=False, repr=False)
    _queried: bool = field(default=False, init=False, repr=False)

    def _sapi_domain(self) -> str:
        r = self.runner(
            [
                "bash",
                "-c",
                f'. {self.paths.sdc_config_lib} && load_sdc_config && echo "$CONFIG_sapi_domain"',
            ],
            check=False,
        )
        return r.stdout.strip()

    def default_platform(self) -> Optional[str]:
        """Stamp the fleet currently assigns as default, or None when unknown."""

        if self._queried:
            return self._default_pi
        self._queried = True

        sapi = self._sapi_domain()
        if not sapi:
            logger.warning("Cannot determine SAPI domain; no fleet default image")
            return None
        try:
            apps = net.fetch_json(f"http://{sapi}/applications?name=sdc")
            cnapi = apps[0]["metadata"]["cnapi_domain"]
            self._default_pi = net.fetch_json(f"http://{cnapi}/boot/default").get("platform")
        except (net.FetchError, LookupError, TypeError, AttributeError) as e:
            logger.warning("Fleet default image query failed: %s", e)
            self._default_pi = None
        return self._default_pi


@dataclass(frozen=True)
class UsbKey:
    """The head node's boot key, physical or virtual, via sdc-usbkey(8)."""

    runner: Runner = run_cmd

    def is_mounted(self) -> bool:
        r = self.runner(["sdc-usbkey", "status"], check=False)
        return r.stdout.strip() == "mounted"

    def status(self) -> str:
        return self.runner(["sdc-usbkey", "status"], check=False).stdout.strip()

    def version(self) -> str:
        r = self.runner(["sdc-usbkey", "status", "-j"], check=False)
        try:
            return str(json.loads(r.stdout or "{}").get("version", ""))
        except ValueError:
            return ""

    def mount(self) -> str:
        return self.runner(["sdc-usbkey", "mount"]).stdout.strip()

    def unmount(self) -> None:
        self.runner(["sdc-usbkey", "unmount"], check=False)
