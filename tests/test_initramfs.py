import stat
import pytest
from osbuilder.lib.initramfs import Initramfs, elf_is_static
from osbuilder.lib.kmod import KernelModules, module_name


def test_archive_layout(tmp_path, unpack_initramfs):
	initrd = Initramfs()
	initrd.add_file("osbuilder/modules/9p.ko", b"abc")
	initrd.add_symlink("bin", "usr/bin")
	initrd.add_char_device("dev/console", 5, 1)
	initrd.add_file("/init", b"#!/bin/sh\n", 0o0755)
	initrd.write(str(tmp_path / "initrd.img"))
	entries = unpack_initramfs(tmp_path / "initrd.img")
	assert entries["__order__"] == [
		"bin", "dev", "dev/console", "init",
		"osbuilder", "osbuilder/modules", "osbuilder/modules/9p.ko",
	]
	mode, body, _ = entries["init"]
	assert stat.S_ISREG(mode) and mode & 0o7777 == 0o0755
	assert body == b"#!/bin/sh\n"
	assert stat.S_ISDIR(entries["osbuilder/modules"][0])
	assert entries["osbuilder/modules/9p.ko"][1] == b"abc"
	mode, body, _ = entries["bin"]
	assert stat.S_ISLNK(mode) and body == b"usr/bin"
	mode, _, rdev = entries["dev/console"]
	assert stat.S_ISCHR(mode) and rdev == (5, 1)


def test_empty_path_rejected():
	with pytest.raises(ValueError):
		Initramfs().add_dir("/")


def test_elf_is_static(tmp_path, fake_elf):
	assert elf_is_static(fake_elf(tmp_path / "static", interp=False))
	assert not elf_is_static(fake_elf(tmp_path / "dynamic", interp=True))
	(tmp_path / "script").write_text("#!/bin/sh\n")
	with pytest.raises(ValueError):
		elf_is_static(str(tmp_path / "script"))


@pytest.mark.parametrize("path, name", [
	("kernel/net/9p/9pnet_virtio.ko.xz", "9pnet_virtio"),
	("kernel/fs/fat/vfat.ko", "vfat"),
	("kernel/drivers/net/virtio-net.ko.zst", "virtio_net"),
])
def test_module_name(path, name):
	assert module_name(path) == name


def test_modules_resolve_dependencies_first(kernel_modules):
	order = kernel_modules.resolve([
		"virtio_pci", "virtio_blk", "9pnet_virtio", "9p", "ext4", "vfat", "nls_utf8",
	])
	assert order == [
		"virtio_blk", "9pnet", "virtio_ring", "9pnet_virtio",
		"netfs", "9p", "fat", "vfat",
	]


def test_modules_extract_decompresses(ctx, kernel_modules, tmp_path):
	kernel_modules.load()
	for name in ["9pnet", "fat", "virtio_blk"]:
		dest = tmp_path / f"{name}.ko"
		kernel_modules.extract(ctx, name, str(dest))
		assert dest.read_bytes() == f"module {name}".encode()


def test_modules_zstd_uses_external_tool(ctx, commands, kernel_modules):
	kernel_modules.load()
	kernel_modules.paths["virtio_net"] = "/lib/modules/x/virtio_net.ko.zst"
	kernel_modules.extract(ctx, "virtio_net", "/tmp/virtio_net.ko")
	assert commands.calls == [[
		"zstd", "-d", "-q", "-f", "-o", "/tmp/virtio_net.ko",
		"/lib/modules/x/virtio_net.ko.zst",
	]]


def test_modules_missing_kernel(tmp_path):
	with pytest.raises(FileNotFoundError):
		KernelModules(release="0.0.0", base=str(tmp_path)).load()
