from ctypes import *


class BlkidProbe:
	blkid = None
	ptr: c_void_p = None

	def __init__(self, blkid, ptr: c_void_p=None):
		self.blkid = blkid
		if ptr: self.ptr = ptr


class Blkid:
	obj: CDLL=None
	BLKID_SUBLKS_LABEL    = (1 << 1)
	BLKID_SUBLKS_UUID     = (1 << 3)
	BLKID_SUBLKS_TYPE     = (1 << 5)
	BLKID_PROBE_OK        = 0
	BLKID_PROBE_NONE      = 1

	def __init__(self):
		self.obj = CDLL("libblkid.so.1")

	def new_probe_from_filename(self, filename: str) -> BlkidProbe:
		self.obj.blkid_new_probe_from_filename.argtypes = (c_char_p, )
		self.obj.blkid_new_probe_from_filename.restype = c_void_p
		ptr = self.obj.blkid_new_probe_from_filename(filename.encode())
		return BlkidProbe(self, ptr) if ptr else None

	def free_probe(self, pr: BlkidProbe):
		self.obj.blkid_free_probe.argtypes = (c_void_p, )
		self.obj.blkid_free_probe.restype = None
		self.obj.blkid_free_probe(pr.ptr)

	def probe_enable_superblocks(self, pr: BlkidProbe, enable: bool) -> int:
		self.obj.blkid_probe_enable_superblocks.argtypes = (c_void_p, c_int, )
		self.obj.blkid_probe_enable_superblocks.restype = c_int
		return self.obj.blkid_probe_enable_superblocks(pr.ptr, enable)

	def probe_set_superblocks_flags(self, pr: BlkidProbe, flags: int) -> int:
		self.obj.blkid_probe_set_superblocks_flags.argtypes = (c_void_p, c_int, )
		self.obj.blkid_probe_set_superblocks_flags.restype = c_int
		return self.obj.blkid_probe_set_superblocks_flags(pr.ptr, flags)

	def do_safeprobe(self, pr: BlkidProbe) -> int:
		self.obj.blkid_do_safeprobe.argtypes = (c_void_p, )
		self.obj.blkid_do_safeprobe.restype = c_int
		return self.obj.blkid_do_safeprobe(pr.ptr)

	def probe_lookup_value(self, pr: BlkidProbe, name: str) -> str | None:
		self.obj.blkid_probe_lookup_value.argtypes = (c_void_p, c_char_p, c_void_p, c_void_p, )
		self.obj.blkid_probe_lookup_value.restype = c_int
		data = c_char_p()
		size = c_size_t()
		ret = self.obj.blkid_probe_lookup_value(pr.ptr, name.encode(), byref(data), byref(size))
		if ret != 0 or not data.value: return None
		return data.value.decode()


def probe_value(dev: str, name: str) -> str | None:
	"""
	Low level probe a superblock value without the blkid cache
	probe_value("/dev/loop0p1", "TYPE") = "vfat"
	"""
	blkid = Blkid()
	pr = blkid.new_probe_from_filename(dev)
	if pr is None: raise OSError(f"failed to open {dev} for probing")
	try:
		blkid.probe_enable_superblocks(pr, True)
		blkid.probe_set_superblocks_flags(
			pr,
			Blkid.BLKID_SUBLKS_LABEL |
			Blkid.BLKID_SUBLKS_UUID |
			Blkid.BLKID_SUBLKS_TYPE,
		)
		ret = blkid.do_safeprobe(pr)
		if ret == Blkid.BLKID_PROBE_NONE: return None
		if ret != Blkid.BLKID_PROBE_OK:
			raise OSError(f"probe {dev} failed: {ret}")
		return blkid.probe_lookup_value(pr, name)
	finally:
		blkid.free_probe(pr)


def probe_uuid(dev: str) -> str:
	"""
	Read filesystem UUID from a device
	probe_uuid("/dev/loop0p2") = "0a1b2c3d-..."
	"""
	uuid = probe_value(dev, "UUID")
	if not uuid: raise OSError(f"failed to get uuid of {dev}")
	return uuid.strip()
