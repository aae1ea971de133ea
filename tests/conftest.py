import gzip
import lzma
import struct
import pytest
from osbuilder.lib import blkid, loop, mount
from osbuilder.lib.context import BuildContext
from osbuilder.lib.kmod import KernelModules, module_name
from osbuilder.lib.machine import IN_MACHINE_ENV, Machine

KERNEL_RELEASE = "6.1.0-test"

MODULES_DEP = """\
kernel/net/9p/9pnet.ko.xz:
kernel/net/9p/9pnet_virtio.ko.xz: kernel/net/9p/9pnet.ko.xz kernel/drivers/virtio/virtio_ring.ko.xz
kernel/drivers/virtio/virtio_ring.ko.xz:
kernel/fs/9p/9p.ko.xz: kernel/fs/netfs/netfs.ko.xz kernel/net/9p/9pnet.ko.xz
kernel/fs/netfs/netfs.ko.xz:
kernel/drivers/block/virtio_blk.ko:
kernel/fs/fat/vfat.ko.gz: kernel/fs/fat/fat.ko.gz
kernel/fs/fat/fat.ko.gz:
"""

MODULES_BUILTIN = """\
kernel/drivers/virtio/virtio_pci.ko
kernel/fs/ext4/ext4.ko
"""


class CommandRecorder:
	"""Stand-in for BuildContext.run_external"""

	def __init__(self):
		self.calls: list[list[str]] = []
		self.envs: list[dict] = []
		self.fail_on: dict[str, int] = {}
		self.hook = None

	def __call__(self, cmd, /, cwd=None, env=None, stdin=None, want_stdout=False):
		cmd = list(cmd)
		self.calls.append(cmd)
		self.envs.append(env)
		if self.hook: self.hook(cmd)
		for key, ret in self.fail_on.items():
			if key in cmd: return ret
		return 0


class FakeMachine(Machine):
	def __init__(self, exitcode: int = 0):
		super().__init__()
		self.exitcode = exitcode
		self.runs: list[list[str]] = []

	def create_image(self, path: str, size: int) -> str:
		serial = f"osbuilder-{len(self.images)}"
		self.images.append((path, serial))
		return f"/dev/disk/by-id/virtio-{serial}"

	def run_in_machine(self, args: list[str]) -> int:
		self.runs.append(list(args))
		return self.exitcode


def parse_cpio(data: bytes) -> dict:
	"""Parse a newc archive into name -> (mode, data, rdev), plus the name order"""
	entries = {}
	names = []
	pos = 0
	while True:
		hdr = data[pos:pos + 110]
		assert hdr[:6] == b"070701"
		fields = [int(hdr[6 + i * 8:14 + i * 8], 16) for i in range(13)]
		mode, filesize, namesize = fields[1], fields[6], fields[11]
		pos += 110
		name = data[pos:pos + namesize - 1].decode()
		pos = (pos + namesize + 3) & ~3
		body = data[pos:pos + filesize]
		pos = (pos + filesize + 3) & ~3
		if name == "TRAILER!!!":
			entries["__order__"] = names
			return entries
		names.append(name)
		entries[name] = (mode, body, (fields[9], fields[10]))


@pytest.fixture(autouse=True)
def host_side(monkeypatch):
	monkeypatch.delenv(IN_MACHINE_ENV, raising=False)


@pytest.fixture
def commands() -> CommandRecorder:
	return CommandRecorder()


@pytest.fixture
def ctx(tmp_path, commands) -> BuildContext:
	c = BuildContext()
	c.set_scratchdir(str(tmp_path / "scratch"))
	c.artifactdir = str(tmp_path / "artifacts")
	c.recipe_dir = str(tmp_path)
	c.architecture = "amd64"
	c.init_origins()
	(tmp_path / "scratch").mkdir()
	(tmp_path / "artifacts").mkdir()
	c.run_external = commands
	return c


@pytest.fixture
def machine() -> FakeMachine:
	return FakeMachine()


@pytest.fixture
def mounts(monkeypatch) -> dict[str, list]:
	"""Record mount(2) / umount2(2) calls instead of doing them"""
	calls = {"mount": [], "umount": []}
	monkeypatch.setattr(
		mount, "sys_mount",
		lambda source, target, fstype, flags=0, data=None:
			calls["mount"].append((source, target, fstype)),
	)
	monkeypatch.setattr(
		mount, "sys_umount",
		lambda target, flags=0: calls["umount"].append(target),
	)
	return calls


@pytest.fixture
def uuids(monkeypatch) -> dict[str, str]:
	"""Filesystem UUIDs returned by blkid, per device"""
	table: dict[str, str] = {}

	def probe(dev: str) -> str:
		return table.setdefault(dev, f"uuid-{dev.rsplit('/', 1)[-1]}")

	monkeypatch.setattr(blkid, "probe_uuid", probe)
	return table


@pytest.fixture
def loops(monkeypatch) -> dict[str, list]:
	"""Record loop device attach / detach"""
	calls = {"setup": [], "detach": []}

	def setup(path, block_size=512, read_only=False, part_scan=True):
		calls["setup"].append(path)
		return "/dev/loop7"

	monkeypatch.setattr(loop, "loop_setup", setup)
	monkeypatch.setattr(loop, "loop_detach", lambda dev: calls["detach"].append(dev))
	return calls


@pytest.fixture
def kernel_modules(tmp_path) -> KernelModules:
	"""Module tree of a fake kernel, mixing xz, gz and plain modules"""
	root = tmp_path / "modules" / KERNEL_RELEASE
	root.mkdir(parents=True)
	(root / "modules.dep").write_text(MODULES_DEP)
	(root / "modules.builtin").write_text(MODULES_BUILTIN)
	for line in MODULES_DEP.splitlines():
		rel = line.split(":", 1)[0]
		path = root / rel
		path.parent.mkdir(parents=True, exist_ok=True)
		body = f"module {module_name(rel)}".encode()
		if rel.endswith(".xz"): body = lzma.compress(body)
		elif rel.endswith(".gz"): body = gzip.compress(body)
		path.write_bytes(body)
	return KernelModules(release=KERNEL_RELEASE, base=str(tmp_path / "modules"))


@pytest.fixture
def unpack_initramfs():
	def _unpack(path) -> dict:
		with open(path, "rb") as f:
			return parse_cpio(gzip.decompress(f.read()))
	return _unpack


@pytest.fixture
def fake_elf():
	"""64-bit little endian ELF with a single program header"""
	def _make(path, interp: bool) -> str:
		ehdr = bytearray(64)
		ehdr[:4] = b"\x7fELF"
		ehdr[4] = 2
		ehdr[5] = 1
		struct.pack_into("<Q", ehdr, 0x20, 64)
		struct.pack_into("<HH", ehdr, 0x36, 56, 1)
		phdr = bytearray(56)
		struct.pack_into("<I", phdr, 0, 3 if interp else 1)
		path.write_bytes(bytes(ehdr + phdr))
		return str(path)
	return _make
