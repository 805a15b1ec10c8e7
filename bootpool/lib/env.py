from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Paths:
    # Prefix under which pool datasets are mounted ("/" on a live system).
    alt_root: str = "/"
    config_default: str = "/var/bootpool/bootpool.yaml"
    staging_dir: str = "/var/tmp"
    # Fleet-provided iPXE and loader bits on compute nodes.
    ipxe_tree: str = "/opt/smartdc/share/usbkey/contents"
    # Present only when head-node tooling can treat a pool as a boot key.
    hn_bootpool_support: str = "/opt/smartdc/lib/bootpool.js"
    usb_key_lib: str = "/lib/sdc/usb-key.sh"
    sdc_config_lib: str = "/lib/sdc/config.sh"

    @property
    def ipxe_etc(self) -> str:
        return f"{self.ipxe_tree}/etc"

    @property
    def ipxe_boot(self) -> str:
        return f"{self.ipxe_tree}/boot"


PATHS = Paths()
