import os
import gzip
import lzma
from logging import getLogger
from osbuilder.lib.context import BuildContext
log = getLogger(__name__)


def module_name(path: str) -> str:
	"""
	Get kernel module name from its file path
	module_name("kernel/net/9p/9pnet_virtio.ko.xz") = "9pnet_virtio"
	module_name("kernel/fs/fat/vfat.ko") = "vfat"
	"""
	name = os.path.basename(path)
	name = name[:name.index(".ko")] if ".ko" in name else name
	return name.replace("-", "_")


class KernelModules:
	"""
	Modules of an installed kernel, resolved through modules.dep
	"""
	release: str
	root: str
	paths: dict[str, str]
	deps: dict[str, list[str]]
	builtin: set[str]

	def __init__(self, release: str = None, base: str = "/lib/modules"):
		self.release = release if release else os.uname().release
		self.root = os.path.join(base, self.release)
		self.paths = {}
		self.deps = {}
		self.builtin = set()

	def load(self):
		dep_file = os.path.join(self.root, "modules.dep")
		if not os.path.exists(dep_file):
			raise FileNotFoundError(f"{dep_file} not found")
		with open(dep_file, "r") as f:
			for line in f:
				if ":" not in line: continue
				path, deps = line.split(":", 1)
				name = module_name(path)
				self.paths[name] = os.path.join(self.root, path.strip())
				self.deps[name] = [module_name(d) for d in deps.split()]
		builtin_file = os.path.join(self.root, "modules.builtin")
		if os.path.exists(builtin_file):
			with open(builtin_file, "r") as f:
				self.builtin.update(module_name(l.strip()) for l in f if l.strip())
		log.debug(f"loaded {len(self.paths)} modules of kernel {self.release}")

	def resolve(self, names: list[str]) -> list[str]:
		"""
		Order modules so that dependencies load first, builtin ones are dropped
		"""
		if len(self.paths) <= 0: self.load()
		order: list[str] = []

		def visit(name: str):
			name = name.replace("-", "_")
			if name in order or name in self.builtin: return
			if name not in self.paths:
				log.warning(f"kernel module {name} not found for {self.release}")
				return
			for dep in self.deps[name]: visit(dep)
			order.append(name)

		for name in names: visit(name)
		return order

	def extract(self, ctx: BuildContext, name: str, dest: str):
		"""
		Write an uncompressed copy of a module to dest
		"""
		path = self.paths[name]
		if path.endswith(".zst"):
			ret = ctx.run_external(["zstd", "-d", "-q", "-f", "-o", dest, path])
			if ret != 0: raise OSError(f"zstd decompress {path} failed")
			return
		with open(path, "rb") as f:
			data = f.read()
		if path.endswith(".xz"): data = lzma.decompress(data)
		elif path.endswith(".gz"): data = gzip.decompress(data)
		with open(dest, "wb") as f:
			f.write(data)
