import os
import stat
from logging import getLogger
from osbuilder.lib import loop
from osbuilder.lib.config import OSBuilderConfigError
from osbuilder.lib.context import BuildContext
from osbuilder.lib.machine import Machine
log = getLogger(__name__)


class BlockTarget:
	"""
	Provides a sized block device for an image file
	"""
	device: str = None
	owns_teardown: bool = False

	def acquire(self, ctx: BuildContext, path: str, size: int) -> str:
		pass

	def release(self, ctx: BuildContext):
		pass


class LoopTarget(BlockTarget):
	"""
	Image file on host attached to a loop device, detached by us
	"""
	owns_teardown: bool = True

	def create_image(self, path: str, size: int):
		if os.path.exists(path):
			st = os.stat(path)
			if not stat.S_ISREG(st.st_mode):
				raise OSBuilderConfigError(f"image {path} is not a file")
		log.info(f"creating {path} with {size} bytes")
		fd = os.open(path, os.O_WRONLY | os.O_CREAT, 0o0644)
		try: os.ftruncate(fd, size)
		finally: os.close(fd)

	def acquire(self, ctx: BuildContext, path: str, size: int) -> str:
		self.create_image(path, size)
		self.device = loop.loop_setup(path)
		log.info(f"created loop device {self.device} from {path}")
		return self.device

	def release(self, ctx: BuildContext):
		if self.device is None: return
		log.debug(f"detaching loop {self.device}")
		loop.loop_detach(self.device)
		self.device = None


class MachineTarget(BlockTarget):
	"""
	Disk provided by the machine, machine exit tears it down
	"""
	owns_teardown: bool = False
	machine: Machine

	def __init__(self, machine: Machine):
		self.machine = machine

	def acquire(self, ctx: BuildContext, path: str, size: int) -> str:
		self.device = self.machine.create_image(path, size)
		log.info(f"machine disk {self.device} backed by {path}")
		return self.device
