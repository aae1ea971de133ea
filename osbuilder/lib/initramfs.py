import os
import gzip
import stat
import struct
from logging import getLogger
log = getLogger(__name__)

CPIO_MAGIC = "070701"
CPIO_TRAILER = "TRAILER!!!"
PT_INTERP = 3


def cpio_header(
	ino: int,
	mode: int,
	nlink: int,
	filesize: int,
	rdevmajor: int,
	rdevminor: int,
	namesize: int,
) -> bytes:
	"""
	Encode a newc cpio header, owner root and mtime 0
	"""
	fields = [
		ino, mode, 0, 0, nlink, 0, filesize,
		0, 0, rdevmajor, rdevminor, namesize, 0,
	]
	return (CPIO_MAGIC + "".join(f"{v:08x}" for v in fields)).encode("ascii")


def pad4(buffer: bytearray):
	padding = (-len(buffer)) % 4
	if padding: buffer.extend(b"\0" * padding)


def elf_is_static(path: str) -> bool:
	"""
	Is an ELF executable free of a program interpreter (statically linked)
	elf_is_static("/bin/busybox") = True
	elf_is_static("/usr/bin/ls") = False
	"""
	with open(path, "rb") as f:
		hdr = f.read(64)
		if hdr[:4] != b"\x7fELF":
			raise ValueError(f"{path} is not an ELF file")
		endian = "<" if hdr[5] == 1 else ">"
		if hdr[4] == 2:
			phoff, = struct.unpack_from(endian + "Q", hdr, 0x20)
			phentsize, phnum = struct.unpack_from(endian + "HH", hdr, 0x36)
		else:
			phoff, = struct.unpack_from(endian + "I", hdr, 0x1C)
			phentsize, phnum = struct.unpack_from(endian + "HH", hdr, 0x2A)
		for idx in range(phnum):
			f.seek(phoff + idx * phentsize)
			ptype, = struct.unpack(endian + "I", f.read(4))
			if ptype == PT_INTERP: return False
	return True


class InitramfsEntry:
	name: str
	mode: int
	data: bytes
	rdev: tuple[int, int]

	def __init__(self, name: str, mode: int, data: bytes = b"", rdev: tuple[int, int] = (0, 0)):
		self.name = name
		self.mode = mode
		self.data = data
		self.rdev = rdev


class Initramfs:
	"""
	In memory rootfs written as a gzip compressed newc cpio archive
	"""
	entries: dict[str, InitramfsEntry]

	def __init__(self):
		self.entries = {}

	def add(self, entry: InitramfsEntry):
		name = entry.name.strip("/")
		if len(name) <= 0: raise ValueError("empty initramfs path")
		parent = os.path.dirname(name)
		if parent and parent not in self.entries:
			self.add_dir(parent)
		entry.name = name
		self.entries[name] = entry

	def add_dir(self, name: str, mode: int = 0o0755):
		self.add(InitramfsEntry(name, stat.S_IFDIR | mode))

	def add_file(self, name: str, data: bytes, mode: int = 0o0644):
		self.add(InitramfsEntry(name, stat.S_IFREG | mode, data))

	def add_host_file(self, name: str, path: str, mode: int = None):
		with open(path, "rb") as f:
			data = f.read()
		if mode is None: mode = os.stat(path).st_mode & 0o7777
		self.add_file(name, data, mode)

	def add_symlink(self, name: str, target: str):
		self.add(InitramfsEntry(name, stat.S_IFLNK | 0o0777, target.encode()))

	def add_char_device(self, name: str, major: int, minor: int, mode: int = 0o0600):
		self.add(InitramfsEntry(name, stat.S_IFCHR | mode, rdev=(major, minor)))

	def to_cpio(self) -> bytes:
		"""
		Parents always sort before their children
		"""
		archive = bytearray()
		names = sorted(self.entries.keys())
		for ino, name in enumerate(names + [CPIO_TRAILER], start=1):
			entry = self.entries.get(name)
			if entry is None: entry = InitramfsEntry(name, 0)
			raw = name.encode()
			archive.extend(cpio_header(
				ino=0 if name == CPIO_TRAILER else ino,
				mode=entry.mode,
				nlink=2 if stat.S_ISDIR(entry.mode) else 1,
				filesize=len(entry.data),
				rdevmajor=entry.rdev[0],
				rdevminor=entry.rdev[1],
				namesize=len(raw) + 1,
			))
			archive.extend(raw + b"\0")
			pad4(archive)
			archive.extend(entry.data)
			pad4(archive)
		return bytes(archive)

	def write(self, path: str):
		log.debug(f"writing initramfs {path} with {len(self.entries)} entries")
		with open(path, "wb") as raw:
			with gzip.GzipFile(fileobj=raw, mode="wb", mtime=0) as f:
				f.write(self.to_cpio())
