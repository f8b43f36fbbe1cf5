"""
usb_gadget.py
Load and unload the mass-storage gadget that exposes the backing images to
the vehicle.

The gadget's state is never cached: it is re-derived from sysfs after every
attach, because a load that "succeeded" can still leave the vehicle without
a drive.
"""
from __future__ import annotations

import glob
import logging
from pathlib import Path

from dashvault.utils import run_command


class GadgetManager:

    def __init__(self, ledger, mount_manager, module="g_mass_storage",
                 lun_glob="/sys/devices/platform/soc/*.usb/gadget*/lun0",
                 module_dir=None):
        self.ledger = ledger
        self.mount_manager = mount_manager
        self.module = module
        self.lun_glob = lun_glob
        self.module_dir = Path(module_dir) if module_dir else Path("/sys/module") / module

    def _module_args(self) -> list[str]:
        images = [str(v.image) for v in self.ledger.volumes]
        n = len(images)
        return [
            f"file={','.join(images)}",
            f"removable={','.join(['1'] * n)}",
            f"ro={','.join(['0'] * n)}",
            "stall=0",
            "iSerialNumber=123456",
        ]

    def attach_to_host(self) -> bool:
        """Expose the (unmounted) backing images to the host."""
        self.ledger.require_releasable()
        res = run_command(["modprobe", self.module, *self._module_args()])
        if res.returncode != 0:
            logging.error(f"Failed to load {self.module}: {(res.stderr or '').strip()}")
            return False
        self.ledger.mark_host_attached()
        logging.info("Backing images attached to host")
        return True

    def detach_from_host(self) -> bool:
        """Unload the gadget so the images can be mounted locally. Safe when not loaded."""
        if not self.is_loaded():
            # modprobe -r exits non-zero for a module that is not in the kernel
            self.ledger.mark_local()
            logging.debug(f"{self.module} not loaded, images already local")
            return True
        res = run_command(["modprobe", "-r", self.module])
        if res.returncode != 0:
            # the host may still be using the images; they stay host-owned
            logging.error(f"Failed to unload {self.module}: {(res.stderr or '').strip()}")
            return False
        self.ledger.mark_local()
        logging.info("Backing images detached from host")
        return True

    def is_loaded(self) -> bool:
        return self.module_dir.exists()

    def is_present(self) -> bool:
        return bool(glob.glob(self.lun_glob))

    def verify_present(self) -> bool:
        """Self-heal once if the gadget did not come up after an attach."""
        if self.is_present():
            return True
        logging.warning("USB gadget not present after attach, re-attaching")
        if self.detach_from_host():
            self.mount_manager.repair_all(self.ledger.volumes)
        self.attach_to_host()
        present = self.is_present()
        if not present:
            logging.error("USB gadget still missing after re-attach")
        return present
