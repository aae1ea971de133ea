"""
Image partition action

Create an image file, partition it, format the filesystems and mount
them under the scratch folder for later actions.

 - action: image-partition
   imagename: "debian-rpi3.img"
   imagesize: 1GB
   partitiontype: msdos
   mountpoints:
     - mountpoint: /
       partition: root
     - mountpoint: /boot/firmware
       partition: firmware
       options: [ x-systemd.automount ]
   partitions:
     - name: firmware
       fs: fat32
       start: 0%
       end: 64MB
     - name: root
       fs: ext4
       start: 64MB
       end: 100%
       flags: [ boot ]

Partition name is also the filesystem label and the key used by
mountpoints. start / end accept human readable sizes or disk percentage.
flags are passed to the parted(8) 'set' command.
"""
import io
import os
from logging import getLogger
from osbuilder.actions.action import Action
from osbuilder.disk.filesystem import format_device, real_fstype
from osbuilder.disk.parted import Parted
from osbuilder.disk.target import BlockTarget, LoopTarget, MachineTarget
from osbuilder.lib import blkid
from osbuilder.lib.config import OSBuilderConfigError
from osbuilder.lib.context import BuildContext
from osbuilder.lib.machine import Machine
from osbuilder.lib.mount import MountPoint, MountTab
from osbuilder.lib.utils import human_size_to_bytes, path_join_root
log = getLogger(__name__)

partition_types = ["gpt", "msdos"]


def _str_list(value, what: str) -> list[str]:
	if value is None: return []
	if type(value) is str: return value.split(",")
	if type(value) is list: return [str(v) for v in value]
	raise OSBuilderConfigError(f"bad {what}")


def _str(value) -> str:
	return "" if value is None else str(value)


def partition_device(base: str, number: int) -> str:
	"""
	Get partition device path from the whole disk path
	partition_device("/dev/disk/by-id/foo", 3) = "/dev/disk/by-id/foo-part3"
	partition_device("/dev/loop0", 2) = "/dev/loop0p2"
	partition_device("/dev/sda", 1) = "/dev/sda1"
	"""
	if "/disk/by-id/" in base:
		return f"{base}-part{number}"
	if base[-1:].isdigit():
		return f"{base}p{number}"
	return f"{base}{number}"


class Partition:
	number: int = 0
	name: str = None
	start: str = None
	end: str = None
	fs: str = None
	flags: list[str] = []
	fsuuid: str = ""

	def __init__(self, config: dict):
		self.number = 0
		self.name = _str(config.get("name"))
		self.start = _str(config.get("start"))
		self.end = _str(config.get("end"))
		self.fs = _str(config.get("fs"))
		self.flags = _str_list(config.get("flags"), "flags")
		self.fsuuid = ""

	def verify(self):
		if not self.name:
			raise OSBuilderConfigError("partition without a name")
		if not self.start:
			raise OSBuilderConfigError(f"partition {self.name} missing start")
		if not self.end:
			raise OSBuilderConfigError(f"partition {self.name} missing end")
		if not self.fs:
			raise OSBuilderConfigError(f"partition {self.name} missing fs type")


class Mountpoint:
	mountpoint: str = None
	partition: str = None
	options: list[str] = []
	part: Partition = None

	def __init__(self, config: dict):
		self.mountpoint = _str(config.get("mountpoint"))
		self.partition = _str(config.get("partition"))
		self.options = _str_list(config.get("options"), "options")
		self.part = None


class ImagePartitionAction(Action):
	imagename: str = None
	imagesize: str = None
	partitiontype: str = None
	partitions: list[Partition] = []
	mountpoints: list[Mountpoint] = []
	size: int = 0
	target: BlockTarget = None

	def __init__(self, config: dict):
		super().__init__(config)
		self.imagename = _str(config.get("imagename"))
		self.imagesize = _str(config.get("imagesize"))
		self.partitiontype = _str(config.get("partitiontype"))
		parts = config.get("partitions") or []
		mnts = config.get("mountpoints") or []
		if type(parts) is not list: raise OSBuilderConfigError("bad partitions")
		if type(mnts) is not list: raise OSBuilderConfigError("bad mountpoints")
		self.partitions = [Partition(p) for p in parts]
		self.mountpoints = [Mountpoint(m) for m in mnts]
		self.size = 0
		self.target = None

	def find_partition(self, name: str) -> Partition | None:
		return next((p for p in self.partitions if p.name == name), None)

	def verify(self, ctx: BuildContext):
		if not self.imagename:
			raise OSBuilderConfigError("imagename not set")
		if self.partitiontype not in partition_types:
			raise OSBuilderConfigError(
				f"unsupported partition type '{self.partitiontype}'"
			)
		if len(self.partitions) <= 0:
			raise OSBuilderConfigError("at least one partition is needed")
		names: set[str] = set()
		for num, p in enumerate(self.partitions, start=1):
			p.number = num
			p.verify()
			if p.name in names:
				raise OSBuilderConfigError(f"duplicate partition {p.name}")
			names.add(p.name)
		for m in self.mountpoints:
			if not m.mountpoint:
				raise OSBuilderConfigError("mountpoint without a path")
			m.part = self.find_partition(m.partition)
			if m.part is None: raise OSBuilderConfigError(
				f"couldn't find partition for {m.mountpoint}"
			)
		try: self.size = human_size_to_bytes(self.imagesize)
		except (TypeError, ValueError): raise OSBuilderConfigError(
			f"failed to parse image size: {self.imagesize}"
		)
		if self.size <= 0:
			raise OSBuilderConfigError(f"image size {self.imagesize} is zero")
		log.debug(f"image {self.imagename} size {self.size} bytes")

	def image_path(self, ctx: BuildContext) -> str:
		if os.path.isabs(self.imagename) or not ctx.artifactdir:
			return self.imagename
		return os.path.join(ctx.artifactdir, self.imagename)

	def acquire(self, ctx: BuildContext, target: BlockTarget) -> str:
		self.target = target
		ctx.image = target.acquire(ctx, self.image_path(ctx), self.size)
		return ctx.image

	def pre_machine(self, ctx: BuildContext, machine: Machine, args: list[str]):
		image = self.acquire(ctx, MachineTarget(machine))
		args.extend(["--internal-image", image])

	def pre_no_machine(self, ctx: BuildContext):
		self.acquire(ctx, LoopTarget())

	def format_partition(self, ctx: BuildContext, p: Partition):
		log.info(f"formatting partition {p.number}")
		dev = partition_device(ctx.image, p.number)
		format_device(ctx, p.fs, p.name, dev)
		p.fsuuid = blkid.probe_uuid(dev)
		log.debug(f"partition {p.name} has uuid {p.fsuuid}")

	def create_partitions(self, ctx: BuildContext):
		parted = Parted(ctx, ctx.image)
		parted.mklabel(self.partitiontype)
		for p in self.partitions:
			name = p.name if self.partitiontype == "gpt" else "primary"
			parted.mkpart(name, p.fs, p.start, p.end)
			for flag in p.flags:
				parted.set_flag(p.number, flag)
			parted.settle()
			self.format_partition(ctx, p)

	def mount_target(self, ctx: BuildContext, m: Mountpoint) -> str:
		return path_join_root(ctx.image_mnt_dir, m.mountpoint)

	def mount_partitions(self, ctx: BuildContext):
		ctx.image_mnt_dir = os.path.join(ctx.scratchdir, "mnt")
		os.makedirs(ctx.image_mnt_dir, mode=0o0755, exist_ok=True)
		for m in self.mountpoints:
			mnt = MountPoint(
				source=partition_device(ctx.image, m.part.number),
				target=self.mount_target(ctx, m),
				fstype=real_fstype(m.part.fs),
			)
			try: mnt.mount()
			except OSError as e:
				raise OSError(f"{m.part.name} mount failed: {e}") from e
			log.info(f"mounted {m.part.name} at {mnt.target}")

	def generate_fstab(self, ctx: BuildContext):
		fstab = MountTab()
		for m in self.mountpoints:
			if not m.part.fsuuid:
				raise RuntimeError(f"missing fs UUID for partition {m.part.name}")
			fstab.append(MountPoint(
				source=f"UUID={m.part.fsuuid}",
				target=m.mountpoint,
				fstype=real_fstype(m.part.fs),
				option=["defaults"] + m.options,
			))
		ctx.image_fstab = io.StringIO()
		ctx.image_fstab.write(fstab.to_mount_file())
		log.debug("generated fstab:\n%s", ctx.get_fstab().strip())

	def generate_kernel_root(self, ctx: BuildContext):
		root = next((m for m in self.mountpoints if m.mountpoint == "/"), None)
		if root is None:
			log.debug("no root mountpoint, kernel root not set")
			return
		if not root.part.fsuuid:
			raise RuntimeError("no fs UUID for root partition")
		ctx.image_kernel_root = f"root=UUID={root.part.fsuuid}"
		log.debug(f"kernel root {ctx.image_kernel_root}")

	def run(self, ctx: BuildContext):
		self.log_start()
		if not ctx.image:
			raise RuntimeError("no image device to partition")
		self.create_partitions(ctx)
		self.mount_partitions(ctx)
		self.generate_fstab(ctx)
		self.generate_kernel_root(ctx)

	def cleanup(self, ctx: BuildContext):
		error: OSError = None
		for m in reversed(self.mountpoints):
			try: MountPoint(target=self.mount_target(ctx, m)).umount()
			except OSError as e:
				log.warning(f"failed to umount {m.mountpoint}: {e}")
				if error is None: error = e
		if self.target and self.target.owns_teardown:
			self.target.release(ctx)
		if error: raise error
