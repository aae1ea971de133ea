import os
import sys
import shlex
import shutil
import tempfile
from logging import getLogger
from osbuilder.lib import utils
from osbuilder.lib.cpu import cpu_arch_get, cpu_arch_qemu_name
from osbuilder.lib.context import BuildContext
from osbuilder.lib.initramfs import Initramfs, elf_is_static
from osbuilder.lib.kmod import KernelModules
from osbuilder.lib.mount import MountPoint, MountTab
log = getLogger(__name__)

IN_MACHINE_ENV = "OSBUILDER_IN_MACHINE"

# host folders the guest sees read-only under the same path
system_shares = ["usr", "etc"]

guest_modules = [
	"virtio_pci", "virtio_blk", "9pnet_virtio", "9p",
	"ext4", "vfat", "nls_cp437", "nls_ascii", "nls_utf8",
]

guest_init = """#!/osbuilder/busybox sh
bb=/osbuilder/busybox
$bb mount -t proc proc /proc
$bb mount -t sysfs sysfs /sys
$bb mount -t devtmpfs devtmpfs /dev
$bb mkdir -p /dev/pts /dev/shm /dev/disk/by-id
$bb mount -t devpts devpts /dev/pts
$bb mount -t tmpfs tmpfs /run
$bb mount -t tmpfs tmpfs /tmp
for mod in {modules}; do
	$bb insmod /osbuilder/modules/$mod.ko || echo "osbuilder: failed to load $mod"
done
p9=trans=virtio,version=9p2000.L,msize=262144
{system_mounts}
$bb mount -t 9p -o $p9 result /result
while read tag path; do
	$bb mkdir -p "$path"
	$bb mount -t 9p -o $p9 "$tag" "$path"
done < /result/volumes
while read src dst fstype opts freq passno; do
	[ -z "$src" ] && continue
	$bb mkdir -p "$dst"
	$bb mount -t "$fstype" -o "$opts" "$src" "$dst"
done < /result/fstab
export PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin
export HOME=/root LANG=C.UTF-8 {env}=1
if [ -x /usr/lib/systemd/systemd-udevd ]; then
	/usr/lib/systemd/systemd-udevd --daemon
	udevadm trigger --action=add
	udevadm settle
else
	for dev in /sys/block/vd*; do
		[ -e "$dev/serial" ] || continue
		$bb ln -sf "/dev/${{dev##*/}}" "/dev/disk/by-id/virtio-$($bb cat $dev/serial)"
	done
fi
cd /
$bb sh /result/command
echo $? > /result/exitcode
$bb sync
$bb reboot -f
"""


def in_machine() -> bool:
	"""
	Is current process the relaunched build inside a machine
	"""
	return os.environ.get(IN_MACHINE_ENV, "") == "1"


def is_system_path(path: str) -> bool:
	"""
	Is path already visible inside the machine through a system share
	is_system_path("/usr/lib/python3/dist-packages") = True
	is_system_path("/home/user/venv") = False
	"""
	path = os.path.realpath(path)
	if path == "/": return True
	top = path.lstrip("/").split("/", 1)[0]
	return top in system_shares


class Machine:
	"""
	Isolated environment which runs the privileged part of a build
	"""
	volumes: list[str]
	images: list[tuple[str, str]]
	fstab: MountTab

	def __init__(self):
		self.volumes = []
		self.images = []
		self.fstab = MountTab()

	def add_volume(self, path: str):
		"""
		Share a host folder with the machine at the same path
		"""
		path = os.path.realpath(path)
		if path not in self.volumes:
			log.debug(f"add volume {path} to machine")
			self.volumes.append(path)

	def add_fstab_entry(self, source: str, target: str, fstype: str, options: list[str] = None):
		"""
		Mount a filesystem inside the machine before the build starts
		add_fstab_entry("LABEL=/scratch", "/scratch", "ext4")
		"""
		log.debug(f"add machine mount {source} on {target}")
		self.fstab.append(MountPoint(source, target, fstype, options))

	def create_image(self, path: str, size: int) -> str:
		"""
		Create a sized disk for the machine and return the path inside it
		size < 0: use an existing file as is
		"""
		raise NotImplementedError()

	def run_in_machine(self, args: list[str]) -> int:
		"""
		Relaunch the build inside the machine and return its exit code
		"""
		raise NotImplementedError()


class QemuMachine(Machine):
	"""
	Machine backed by a KVM accelerated qemu with the host kernel,
	host /usr and /etc are shared read-only and a small busybox
	initramfs mounts the shares and runs the build
	"""
	ctx: BuildContext
	memory: int
	cpus: int
	kernel: str
	modules: KernelModules

	@staticmethod
	def qemu_binary() -> str:
		arch = cpu_arch_qemu_name(cpu_arch_get())
		return utils.find_external(f"qemu-system-{arch}")

	@staticmethod
	def static_busybox() -> str | None:
		"""
		Find a statically linked busybox, the guest has no libc before /usr is mounted
		"""
		busybox = utils.find_external("busybox")
		if busybox is None: return None
		try: static = elf_is_static(busybox)
		except (OSError, ValueError): return None
		return busybox if static else None

	@staticmethod
	def host_kernel() -> str:
		return f"/boot/vmlinuz-{os.uname().release}"

	@staticmethod
	def supported() -> bool:
		"""
		Is qemu machine usable on this host
		"""
		if QemuMachine.qemu_binary() is None:
			log.debug("qemu not found")
			return False
		if not os.access("/dev/kvm", os.R_OK | os.W_OK):
			log.debug("kvm not accessible")
			return False
		if not os.access(QemuMachine.host_kernel(), os.R_OK):
			log.debug(f"{QemuMachine.host_kernel()} not readable")
			return False
		if QemuMachine.static_busybox() is None:
			log.debug("static busybox not found")
			return False
		# guest binaries only come from the /usr share
		if not os.path.islink("/bin"):
			log.debug("host has no merged /usr")
			return False
		return True

	def __init__(self, ctx: BuildContext, memory: int = 2048, cpus: int = None):
		super().__init__()
		self.ctx = ctx
		self.memory = memory
		self.cpus = cpus if cpus else os.cpu_count()
		self.kernel = self.host_kernel()
		self.modules = KernelModules()

	def add_volume(self, path: str):
		if is_system_path(path): return
		super().add_volume(path)

	def create_image(self, path: str, size: int) -> str:
		path = os.path.realpath(path)
		if size >= 0:
			log.info(f"creating {path} with {size} bytes")
			fd = os.open(path, os.O_RDWR | os.O_CREAT | os.O_TRUNC, 0o0644)
			try: os.ftruncate(fd, size)
			finally: os.close(fd)
		elif not os.path.exists(path):
			raise FileNotFoundError(f"image {path} not found")
		serial = f"osbuilder-{len(self.images)}"
		self.images.append((path, serial))
		return f"/dev/disk/by-id/virtio-{serial}"

	def init_script(self, modules: list[str]) -> str:
		mounts = [
			f"$bb mount -t 9p -o $p9,ro {share} /{share}"
			for share in system_shares
		]
		return guest_init.format(
			modules=" ".join(modules) if modules else "",
			system_mounts="\n".join(mounts),
			env=IN_MACHINE_ENV,
		)

	def build_initramfs(self, path: str):
		"""
		Create the guest initramfs with busybox, virtio modules and init
		"""
		initrd = Initramfs()
		for folder in [
			"dev", "proc", "sys", "run", "tmp", "root", "mnt",
			"result", "scratch", "osbuilder/modules",
		] + system_shares:
			initrd.add_dir(folder)
		initrd.add_char_device("dev/console", 5, 1)
		initrd.add_char_device("dev/null", 1, 3, 0o0666)
		# mirror merged /usr layout of the host
		for name in sorted(os.listdir("/")):
			full = os.path.join("/", name)
			if not os.path.islink(full): continue
			target = os.readlink(full)
			if target.lstrip("/").split("/", 1)[0] in system_shares:
				initrd.add_symlink(name, target)
		initrd.add_host_file("osbuilder/busybox", self.static_busybox(), 0o0755)
		modules = self.modules.resolve(guest_modules)
		with tempfile.TemporaryDirectory(prefix="osbuilder-kmod-") as tmp:
			for name in modules:
				dest = os.path.join(tmp, f"{name}.ko")
				self.modules.extract(self.ctx, name, dest)
				initrd.add_host_file(f"osbuilder/modules/{name}.ko", dest, 0o0644)
		initrd.add_file("init", self.init_script(modules).encode(), 0o0755)
		initrd.write(path)

	def python_paths(self) -> list[str]:
		"""
		Import paths the relaunched build needs, osbuilder itself first
		"""
		source = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
		paths = [source]
		for path in sys.path:
			if path and os.path.isdir(path) and path not in paths:
				paths.append(path)
		return paths

	def guest_command(self, args: list[str]) -> str:
		paths = self.python_paths()
		cmds = [sys.executable, "-m", "osbuilder.main"]
		cmds.extend(args)
		return (
			f"export PYTHONPATH={shlex.quote(os.pathsep.join(paths))}\n"
			f"exec {shlex.join(cmds)}\n"
		)

	def command_line(self, result: str, initrd: str) -> list[str]:
		cmds = [
			self.qemu_binary(),
			"-enable-kvm", "-cpu", "host",
			"-nodefaults", "-no-reboot", "-display", "none",
			"-m", str(self.memory),
			"-smp", str(self.cpus),
			"-kernel", self.kernel,
			"-initrd", initrd,
			"-serial", "stdio",
		]
		if cpu_arch_get() in ["arm64", "armhf"]:
			cmds.extend(["-machine", "virt"])
		append = [
			"console=ttyS0", "quiet", "panic=-1",
			f"{IN_MACHINE_ENV}=1",
		]
		cmds.extend(["-append", " ".join(append)])
		for share in system_shares:
			cmds.extend([
				"-virtfs",
				f"local,path=/{share},mount_tag={share},security_model=none,readonly=on",
			])
		shares = [("result", result)]
		shares.extend((f"volume-{idx}", vol) for idx, vol in enumerate(self.volumes))
		for tag, path in shares:
			cmds.extend([
				"-virtfs",
				f"local,path={path},mount_tag={tag},security_model=none",
			])
		for idx, (path, serial) in enumerate(self.images):
			cmds.extend([
				"-drive", f"file={path},if=none,format=raw,cache=unsafe,id=drive-{idx}",
				"-device", f"virtio-blk-pci,drive=drive-{idx},serial={serial}",
			])
		return cmds

	def run_in_machine(self, args: list[str]) -> int:
		if sys.prefix and not is_system_path(sys.prefix):
			self.add_volume(sys.prefix)
		for path in self.python_paths():
			self.add_volume(path)
		result = tempfile.mkdtemp(prefix="osbuilder-machine-")
		try:
			with open(os.path.join(result, "command"), "w") as f:
				f.write(self.guest_command(args))
			with open(os.path.join(result, "volumes"), "w") as f:
				for idx, vol in enumerate(self.volumes):
					f.write(f"volume-{idx} {vol}\n")
			with open(os.path.join(result, "fstab"), "w") as f:
				f.write(self.fstab.to_mount_file())
			initrd = os.path.join(result, "initrd.img")
			self.build_initramfs(initrd)
			ret = self.ctx.run_external(self.command_line(result, initrd))
			if ret != 0:
				log.error(f"machine exit with {ret}")
				return ret
			path = os.path.join(result, "exitcode")
			if not os.path.exists(path):
				log.error("machine did not report an exit code")
				return 1
			with open(path, "r") as f:
				return int(f.read().strip())
		finally:
			shutil.rmtree(result, ignore_errors=True)


def detect_machine(ctx: BuildContext, memory: int = 2048, cpus: int = None) -> Machine | None:
	"""
	Pick a machine for this build, None means run on the host
	"""
	if in_machine(): return None
	if not QemuMachine.supported(): return None
	return QemuMachine(ctx, memory=memory, cpus=cpus)
