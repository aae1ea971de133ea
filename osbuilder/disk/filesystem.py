from logging import getLogger
from osbuilder.lib.context import BuildContext
log = getLogger(__name__)

fstype_map: dict[str, str] = {
	"fat32": "vfat",
}


def real_fstype(fstype: str) -> str:
	"""
	Map configured filesystem name to kernel name
	real_fstype("fat32") = "vfat"
	real_fstype("ext4") = "ext4"
	"""
	return fstype_map.get(fstype, fstype)


class FileSystemCreator:
	fstype: str

	def __init__(self, fstype: str):
		self.fstype = fstype

	def command(self, label: str, device: str) -> list[str]:
		return [f"mkfs.{self.fstype}", "-L", label, device]

	def create(self, ctx: BuildContext, label: str, device: str):
		cmds = self.command(label, device)
		ret = ctx.run_external(cmds)
		if ret != 0: raise OSError(f"{cmds[0]} failed")


class FatCreator(FileSystemCreator):
	def command(self, label: str, device: str) -> list[str]:
		return ["mkfs.vfat", "-n", label, device]


creators: list[tuple[str, type[FileSystemCreator]]] = [
	("fat32", FatCreator),
	("vfat",  FatCreator),
]


def find_creator(fstype: str) -> FileSystemCreator:
	t = next((t[1] for t in creators if fstype == t[0]), FileSystemCreator)
	return t(fstype)


def format_device(ctx: BuildContext, fstype: str, label: str, device: str):
	"""
	Create a filesystem with label on device
	"""
	log.debug(f"formatting {device} as {fstype} with label {label}")
	find_creator(fstype).create(ctx, label, device)
