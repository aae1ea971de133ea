from logging import getLogger
from osbuilder.lib import utils
from osbuilder.lib.context import BuildContext
from osbuilder.lib.machine import in_machine
log = getLogger(__name__)


class Parted:
	"""
	Partition table editing via parted(8) script mode
	"""
	ctx: BuildContext
	device: str

	def __init__(self, ctx: BuildContext, device: str):
		self.ctx = ctx
		self.device = device

	def run(self, *args: str, align: str = None):
		cmds = ["parted"]
		if align: cmds.extend(["-a", align])
		cmds.extend(["-s", self.device])
		cmds.extend(args)
		ret = self.ctx.run_external(cmds)
		if ret != 0: raise OSError(f"parted {args[0]} on {self.device} failed")

	def mklabel(self, label: str):
		log.debug(f"create {label} partition table on {self.device}")
		self.run("mklabel", label)

	def mkpart(self, name: str, fstype: str, start: str, end: str):
		log.debug(f"create partition {name} {fstype} from {start} to {end}")
		self.run("mkpart", name, fstype, start, end, align="none")

	def set_flag(self, number: int, flag: str, state: bool = True):
		self.run("set", str(number), flag, "on" if state else "off")

	def settle(self):
		"""
		Wait for udev to create partition links (by-id) inside a machine
		"""
		if not in_machine() or not utils.have_external("udevadm"): return
		ret = self.ctx.run_external(["udevadm", "settle"])
		if ret != 0: raise OSError(f"udevadm settle for {self.device} failed")
