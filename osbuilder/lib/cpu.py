import os
from logging import getLogger
log = getLogger(__name__)


def cpu_arch_name_map(name: str) -> str:
	"""
	Map cpu arch name to debian architecture names
	cpu_arch_name_map("x86_64") = "amd64"
	cpu_arch_name_map("amd64") = "amd64"
	cpu_arch_name_map("AArch64") = "arm64"
	"""
	match name.lower():
		case "x64" | "x86_64" | "amd64" | "intel64": return "amd64"
		case "i386" | "i486" | "i586" | "i686" | "x86" | "ia32": return "i386"
		case "aarch64" | "arm64" | "armv8a" | "armv8" | "aa64": return "arm64"
		case "armv7" | "armv7l" | "armv7h" | "armhf" | "aarch32": return "armhf"
		case "riscv64" | "rv64": return "riscv64"
		case _: return name.lower()


def cpu_arch_qemu_name(name: str) -> str:
	"""
	Map cpu arch name to qemu target names
	cpu_arch_qemu_name("amd64") = "x86_64"
	cpu_arch_qemu_name("arm64") = "aarch64"
	"""
	match cpu_arch_name_map(name):
		case "amd64": return "x86_64"
		case "i386": return "i386"
		case "arm64": return "aarch64"
		case "armhf": return "arm"
		case arch: return arch


def cpu_arch_get_raw() -> str:
	"""
	Get current cpu arch
	cpu_arch_get_raw() = "x86_64"
	cpu_arch_get_raw() = "aarch64"
	"""
	return os.uname().machine


def cpu_arch_get() -> str:
	"""
	Get current cpu arch and map to debian names
	cpu_arch_get() = "amd64"
	cpu_arch_get() = "arm64"
	"""
	return cpu_arch_name_map(cpu_arch_get_raw())


def cpu_arch_compatible(
	target: str,
	current: str = None,
) -> bool:
	"""
	Can current cpu run target executables natively
	cpu_arch_compatible("amd64", "x86_64") = True
	cpu_arch_compatible("i386", "x86_64") = True
	cpu_arch_compatible("arm64", "x86_64") = False
	cpu_arch_compatible("armhf", "aarch64") = True
	"""
	if current is None: current = cpu_arch_get_raw()
	tgt = cpu_arch_name_map(target.strip())
	cur = cpu_arch_name_map(current.strip())
	if len(tgt) == 0: return False
	if tgt == cur: return True
	if cur == "amd64" and tgt == "i386": return True
	if cur == "arm64" and tgt == "armhf": return True
	return False
