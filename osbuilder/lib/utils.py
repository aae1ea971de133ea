import os
import re
import shlex
import shutil
from logging import getLogger
log = getLogger(__name__)


def parse_cmd_args(cmd: str | list[str]) -> list[str]:
	"""
	Parse command line to list
	parse_cmd_args("ls -la /mnt") = ["ls", "-la", "/mnt"]
	parse_cmd_args(["ls", "-la", "/mnt"]) = ["ls", "-la", "/mnt"]
	"""
	if type(cmd) is str: return shlex.split(cmd)
	elif type(cmd) is list: return cmd
	else: raise TypeError("unknown type for cmd")


def find_external(name: str) -> str:
	"""
	Find a linux executable path
	find_external("parted") = "/usr/bin/parted"
	find_external("service") = None
	"""
	return shutil.which(name)


def have_external(name: str) -> bool:
	"""
	Is a command in PATH
	have_external("parted") = True
	have_external("service") = False
	"""
	return shutil.which(name) is not None


human_size_re = re.compile(r"^(\d+(?:\.\d+)*) ?([kKmMgGtTpP])?[iI]?[bB]?$")
human_size_units = {
	"k": 10**3,
	"m": 10**6,
	"g": 10**9,
	"t": 10**12,
	"p": 10**15,
}


def human_size_to_bytes(value: str | int) -> int:
	"""
	Convert human-readable size string to number (decimal units)
	human_size_to_bytes("1GB") = 1000000000
	human_size_to_bytes("100MB") = 100000000
	human_size_to_bytes("32k") = 32000
	human_size_to_bytes("1.5 GiB") = 1500000000
	human_size_to_bytes("512") = 512
	human_size_to_bytes(123) = 123
	"""
	if type(value) is int:
		if value < 0: raise ValueError(f"negative size {value}")
		return value
	if type(value) is not str:
		raise TypeError("bad size value")
	match = human_size_re.match(value.strip())
	if match is None:
		raise ValueError(f"invalid size: '{value}'")
	try: num = float(match.group(1))
	except ValueError:
		raise ValueError(f"invalid size: '{value}'")
	unit = match.group(2)
	mul = human_size_units[unit.lower()] if unit else 1
	return int(num * mul)


def clean_path(path: str) -> str:
	"""
	Get a normalized absolute path
	clean_path("recipe.yaml") = "/home/user/recipe.yaml"
	clean_path("/tmp//a/../b") = "/tmp/b"
	"""
	return os.path.normpath(os.path.abspath(path))


def path_join_root(root: str, path: str) -> str:
	"""
	Resolve an absolute target path under a root folder
	path_join_root("/scratch/mnt", "/") = "/scratch/mnt"
	path_join_root("/scratch/mnt", "/boot/firmware") = "/scratch/mnt/boot/firmware"
	"""
	path = path.lstrip(os.sep)
	if len(path) <= 0: return root
	return os.path.join(root, path)
