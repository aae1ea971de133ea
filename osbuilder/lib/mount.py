import os
import ctypes
from typing import Self
from logging import getLogger
log = getLogger(__name__)

_libc: ctypes.CDLL = None


def _get_libc() -> ctypes.CDLL:
	global _libc
	if _libc is None:
		_libc = ctypes.CDLL(None, use_errno=True)
		_libc.mount.argtypes = (
			ctypes.c_char_p, ctypes.c_char_p, ctypes.c_char_p,
			ctypes.c_ulong, ctypes.c_char_p,
		)
		_libc.umount2.argtypes = (ctypes.c_char_p, ctypes.c_int)
	return _libc


def sys_mount(source: str, target: str, fstype: str, flags: int = 0, data: str = None):
	"""
	Call mount(2)
	"""
	libc = _get_libc()
	ret = libc.mount(
		source.encode() if source else None,
		target.encode(),
		fstype.encode() if fstype else None,
		flags,
		data.encode() if data else None,
	)
	if ret != 0:
		err = ctypes.get_errno()
		raise OSError(err, f"mount {source} to {target} failed: {os.strerror(err)}")


def sys_umount(target: str, flags: int = 0):
	"""
	Call umount2(2)
	"""
	libc = _get_libc()
	ret = libc.umount2(target.encode(), flags)
	if ret != 0:
		err = ctypes.get_errno()
		raise OSError(err, f"umount {target} failed: {os.strerror(err)}")


class MountPoint:
	source: str = None
	target: str = None
	fstype: str = None
	option: list[str] = []
	fs_freq: int = 0
	fs_passno: int = 0

	@property
	def options(self):
		"""
		Get options as string
		"""
		return ",".join(self.option)

	@options.setter
	def options(self, val: str):
		"""
		Set options from string
		"""
		self.option = val.split(",")

	def have_source(self) -> bool: return self.source and self.source != "none"
	def have_fstype(self) -> bool: return self.fstype and self.fstype != "none"
	def have_options(self) -> bool: return len(self.option) > 0

	def mount(self) -> Self:
		"""
		Mount now
		"""
		if not os.path.exists(self.target):
			os.makedirs(self.target, mode=0o0755)
		log.debug(
			f"try mount {self.source} "
			f"to {self.target} "
			f"as {self.fstype}"
		)
		sys_mount(
			self.source,
			self.target,
			self.fstype if self.have_fstype() else None,
		)
		return self

	def umount(self) -> Self:
		"""
		UnMount now
		"""
		sys_umount(self.target)
		log.debug(f"umount {self.target} successfuly")
		return self

	def fixup(self) -> Self:
		if not self.have_source(): self.source = "none"
		if not self.target: self.target = "none"
		if not self.have_fstype(): self.fstype = "none"
		if not self.have_options(): self.options = "defaults"
		return self

	def to_mount_line(self, sep: str = "\t") -> str:
		"""
		To mount tab line string
		UUID=xxx	/	ext4	defaults	0	0
		"""
		self.fixup()
		fields = [
			self.source,
			self.target,
			self.fstype,
			self.options,
			str(self.fs_freq),
			str(self.fs_passno),
		]
		return sep.join(fields)

	def __init__(
		self,
		source: str = None,
		target: str = None,
		fstype: str = None,
		option: list[str] = None,
	):
		self.source = source
		self.target = target
		self.fstype = fstype
		self.option = list(option) if option else []
		self.fs_freq = 0
		self.fs_passno = 0

	def __repr__(self) -> str:
		return f"MountPoint({self.source} on {self.target} type {self.fstype})"


class MountTab(list[MountPoint]):
	def to_mount_file(self, linesep: str = "\n") -> str:
		"""
		Convert to mount file (fstab) lines
		"""
		ret = ""
		for point in self:
			ret += point.to_mount_line()
			ret += linesep
		return ret
