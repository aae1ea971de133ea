import os
import stat
import fcntl
import ctypes
from logging import getLogger
log = getLogger(__name__)


LO_NAME_SIZE         = 64
LO_KEY_SIZE          = 32
LO_FLAGS_READ_ONLY   = 1
LO_FLAGS_PARTSCAN    = 8
LOOP_MAJOR           = 7
LOOP_CLR_FD          = 0x4C01
LOOP_CONFIGURE       = 0x4C0A
LOOP_CTL_GET_FREE    = 0x4C82


class LoopInfo64(ctypes.Structure):
	_fields_ = [
		("lo_device",            ctypes.c_uint64),
		("lo_inode",             ctypes.c_uint64),
		("lo_rdevice",           ctypes.c_uint64),
		("lo_offset",            ctypes.c_uint64),
		("lo_sizelimit",         ctypes.c_uint64),
		("lo_number",            ctypes.c_uint32),
		("lo_encrypt_type",      ctypes.c_uint32),
		("lo_encrypt_key_size",  ctypes.c_uint32),
		("lo_flags",             ctypes.c_uint32),
		("lo_file_name",         ctypes.c_char * LO_NAME_SIZE),
		("lo_crypt_name",        ctypes.c_char * LO_NAME_SIZE),
		("lo_encrypt_key",       ctypes.c_byte * LO_KEY_SIZE),
		("lo_init",              ctypes.c_uint64 * 2),
	]


class LoopConfig(ctypes.Structure):
	_fields_ = [
		("fd",         ctypes.c_uint32),
		("block_size", ctypes.c_uint32),
		("info",       LoopInfo64),
		("__reserved", ctypes.c_uint64 * 8),
	]


def loop_get_free() -> str:
	"""
	Ask loop-control for an unused loop device
	loop_get_free() = "/dev/loop3"
	"""
	ctrl = os.open("/dev/loop-control", os.O_RDWR)
	try:
		no = fcntl.ioctl(ctrl, LOOP_CTL_GET_FREE)
		if no < 0: raise OSError("LOOP_CTL_GET_FREE failed")
	finally: os.close(ctrl)
	dev = f"/dev/loop{no}"
	if not os.path.exists(dev):
		# inside minimal environments the node may be missing
		mode = stat.S_IRUSR | stat.S_IWUSR | stat.S_IFBLK
		os.mknod(dev, mode, os.makedev(LOOP_MAJOR, no))
	return dev


def loop_setup(
	path: str,
	block_size: int = 512,
	read_only: bool = False,
	part_scan: bool = True,
) -> str:
	"""
	Attach a regular file to a free loop device
	loop_setup("/build/disk.img") = "/dev/loop0"
	"""
	path = os.path.realpath(path)
	dev = loop_get_free()
	flags = 0
	if part_scan: flags |= LO_FLAGS_PARTSCAN
	if read_only: flags |= LO_FLAGS_READ_ONLY
	opened, loop = -1, -1
	try:
		opened = os.open(path, os.O_RDONLY if read_only else os.O_RDWR)
		li = LoopInfo64(
			lo_flags=flags,
			lo_file_name=path[0:LO_NAME_SIZE - 1].encode(),
		)
		lc = LoopConfig(fd=opened, block_size=block_size, info=li)
		loop = os.open(dev, os.O_RDWR)
		ret = fcntl.ioctl(loop, LOOP_CONFIGURE, lc)
		if ret != 0: raise OSError(f"configure loop device {dev} with {path} failed")
	finally:
		if loop >= 0: os.close(loop)
		if opened >= 0: os.close(opened)
	log.debug(f"attached {path} to {dev}")
	return dev


def loop_detach(dev: str):
	"""
	Detach a loop device from its backing file
	"""
	loop = os.open(dev, os.O_RDWR)
	try:
		ret = fcntl.ioctl(loop, LOOP_CLR_FD)
		if ret != 0: raise OSError(f"detach loop device {dev} failed")
	finally: os.close(loop)
	log.debug(f"detached loop device {dev}")
