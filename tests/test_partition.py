import copy
import os
import pytest
from osbuilder.actions.partition import ImagePartitionAction, partition_device
from osbuilder.lib.config import OSBuilderConfigError

RPI_RECIPE = {
	"action": "image-partition",
	"imagename": "debian-rpi3.img",
	"imagesize": "1GB",
	"partitiontype": "gpt",
	"mountpoints": [
		{"mountpoint": "/", "partition": "root"},
		{
			"mountpoint": "/boot/firmware",
			"partition": "firmware",
			"options": ["x-systemd.automount"],
		},
	],
	"partitions": [
		{"name": "firmware", "fs": "fat32", "start": "0%", "end": "64MB"},
		{"name": "root", "fs": "ext4", "start": "64MB", "end": "100%", "flags": ["boot"]},
	],
}


def make_action(**changes) -> ImagePartitionAction:
	cfg = copy.deepcopy(RPI_RECIPE)
	cfg.update(changes)
	return ImagePartitionAction(cfg)


# ---------------------------------------------------------------------------
# Verify
# ---------------------------------------------------------------------------

def test_verify_numbers_partitions_in_declaration_order(ctx):
	action = make_action()
	action.verify(ctx)
	assert [(p.name, p.number) for p in action.partitions] == [("firmware", 1), ("root", 2)]
	assert action.size == 1000000000


def test_verify_numbers_many_partitions(ctx):
	parts = [
		{"name": f"p{i}", "fs": "ext4", "start": f"{i}0MB", "end": f"{i + 1}0MB"}
		for i in range(1, 7)
	]
	action = make_action(partitions=parts, mountpoints=[])
	action.verify(ctx)
	assert [p.number for p in action.partitions] == [1, 2, 3, 4, 5, 6]


def test_verify_resolves_mountpoints(ctx):
	action = make_action()
	action.verify(ctx)
	assert action.mountpoints[0].part is action.partitions[1]
	assert action.mountpoints[1].part is action.partitions[0]


@pytest.mark.parametrize("field", ["name", "start", "end", "fs"])
def test_verify_rejects_incomplete_partition(ctx, commands, field):
	action = make_action()
	del action.config["partitions"][1][field]
	action = ImagePartitionAction(action.config)
	with pytest.raises(OSBuilderConfigError):
		action.verify(ctx)
	assert commands.calls == []


def test_verify_rejects_unknown_mount_partition(ctx, commands, mounts, loops):
	mnts = copy.deepcopy(RPI_RECIPE["mountpoints"])
	mnts.append({"mountpoint": "/home", "partition": "home"})
	action = make_action(mountpoints=mnts)
	with pytest.raises(OSBuilderConfigError, match="/home"):
		action.verify(ctx)
	assert commands.calls == []
	assert mounts["mount"] == []
	assert loops["setup"] == []


@pytest.mark.parametrize("size", ["abc", "1XB", "", "-1GB", "1.2.3GB", "GB"])
def test_verify_rejects_malformed_image_size(ctx, commands, loops, size):
	action = make_action(imagesize=size)
	with pytest.raises(OSBuilderConfigError):
		action.verify(ctx)
	assert commands.calls == []
	assert loops["setup"] == []
	assert os.listdir(ctx.artifactdir) == []


def test_verify_rejects_unknown_partition_type(ctx):
	with pytest.raises(OSBuilderConfigError, match="partition type"):
		make_action(partitiontype="apm").verify(ctx)


def test_verify_rejects_duplicate_partition_names(ctx):
	parts = copy.deepcopy(RPI_RECIPE["partitions"])
	parts[1]["name"] = "firmware"
	with pytest.raises(OSBuilderConfigError, match="duplicate"):
		make_action(partitions=parts, mountpoints=[]).verify(ctx)


def test_verify_rejects_missing_image_name(ctx):
	with pytest.raises(OSBuilderConfigError, match="imagename"):
		make_action(imagename="").verify(ctx)


# ---------------------------------------------------------------------------
# Device naming
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("base, number, expected", [
	("/dev/disk/by-id/foo", 3, "/dev/disk/by-id/foo-part3"),
	("/dev/disk/by-id/virtio-osbuilder-0", 1, "/dev/disk/by-id/virtio-osbuilder-0-part1"),
	("/tmp/image5", 2, "/tmp/image5p2"),
	("/dev/loop0", 1, "/dev/loop0p1"),
	("/tmp/image", 1, "/tmp/image1"),
	("/dev/sda", 4, "/dev/sda4"),
])
def test_partition_device(base, number, expected):
	assert partition_device(base, number) == expected


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------

def test_run_builds_layout_and_boot_metadata(ctx, commands, mounts, uuids):
	action = make_action()
	action.verify(ctx)
	ctx.image = "/dev/loop0"
	uuids["/dev/loop0p1"] = "AAAA-BBBB"
	uuids["/dev/loop0p2"] = "11111111-2222-3333-4444-555555555555"
	action.run(ctx)

	assert commands.calls == [
		["parted", "-s", "/dev/loop0", "mklabel", "gpt"],
		["parted", "-a", "none", "-s", "/dev/loop0", "mkpart", "firmware", "fat32", "0%", "64MB"],
		["mkfs.vfat", "-n", "firmware", "/dev/loop0p1"],
		["parted", "-a", "none", "-s", "/dev/loop0", "mkpart", "root", "ext4", "64MB", "100%"],
		["parted", "-s", "/dev/loop0", "set", "2", "boot", "on"],
		["mkfs.ext4", "-L", "root", "/dev/loop0p2"],
	]
	mnt = os.path.join(ctx.scratchdir, "mnt")
	assert ctx.image_mnt_dir == mnt
	assert mounts["mount"] == [
		("/dev/loop0p2", mnt, "ext4"),
		("/dev/loop0p1", os.path.join(mnt, "boot/firmware"), "vfat"),
	]
	assert os.path.isdir(os.path.join(mnt, "boot/firmware"))
	assert action.partitions[0].fsuuid == "AAAA-BBBB"
	assert ctx.get_fstab() == (
		"UUID=11111111-2222-3333-4444-555555555555\t/\text4\tdefaults\t0\t0\n"
		"UUID=AAAA-BBBB\t/boot/firmware\tvfat\tdefaults,x-systemd.automount\t0\t0\n"
	)
	assert ctx.image_kernel_root == "root=UUID=11111111-2222-3333-4444-555555555555"


def test_run_msdos_uses_primary_partitions(ctx, commands, mounts, uuids):
	action = make_action(partitiontype="msdos")
	action.verify(ctx)
	ctx.image = "/tmp/image"
	action.run(ctx)
	mkparts = [c for c in commands.calls if "mkpart" in c]
	assert [c[6] for c in mkparts] == ["primary", "primary"]
	assert ["mkfs.vfat", "-n", "firmware", "/tmp/image1"] in commands.calls


def test_run_without_root_mount_leaves_kernel_root_unset(ctx, mounts, uuids):
	action = make_action(mountpoints=[
		{"mountpoint": "/boot/firmware", "partition": "firmware"},
	])
	action.verify(ctx)
	ctx.image = "/dev/loop0"
	action.run(ctx)
	assert ctx.image_kernel_root == ""
	assert ctx.get_fstab() == "UUID=uuid-loop0p1\t/boot/firmware\tvfat\tdefaults\t0\t0\n"


def test_run_fails_when_format_fails(ctx, commands, mounts, uuids):
	commands.fail_on["mkfs.ext4"] = 1
	action = make_action()
	action.verify(ctx)
	ctx.image = "/dev/loop0"
	with pytest.raises(OSError, match="mkfs.ext4"):
		action.run(ctx)
	assert mounts["mount"] == []


def test_run_fails_when_uuid_missing(ctx, commands, mounts, monkeypatch):
	from osbuilder.lib import blkid
	monkeypatch.setattr(blkid, "probe_uuid", lambda dev: "")
	action = make_action()
	action.verify(ctx)
	ctx.image = "/dev/loop0"
	with pytest.raises(RuntimeError, match="UUID"):
		action.run(ctx)


# ---------------------------------------------------------------------------
# Provisioning and cleanup
# ---------------------------------------------------------------------------

def test_cleanup_unmounts_in_reverse_order(ctx, mounts, uuids):
	mnts = [
		{"mountpoint": "/", "partition": "root"},
		{"mountpoint": "/boot", "partition": "firmware"},
		{"mountpoint": "/boot/firmware", "partition": "firmware"},
	]
	action = make_action(mountpoints=mnts)
	action.verify(ctx)
	ctx.image = "/dev/loop0"
	action.run(ctx)
	action.cleanup(ctx)
	mnt = ctx.image_mnt_dir
	assert mounts["umount"] == [
		os.path.join(mnt, "boot/firmware"),
		os.path.join(mnt, "boot"),
		mnt,
	]
	assert [m[1] for m in mounts["mount"]] == list(reversed(mounts["umount"]))


def test_host_path_creates_image_and_detaches_loop(ctx, mounts, uuids, loops):
	action = make_action(imagesize="64MB")
	action.verify(ctx)
	action.pre_no_machine(ctx)
	image = os.path.join(ctx.artifactdir, "debian-rpi3.img")
	assert loops["setup"] == [image]
	assert os.path.getsize(image) == 64000000
	assert ctx.image == "/dev/loop7"
	action.run(ctx)
	assert ["mkfs.ext4", "-L", "root", "/dev/loop7p2"] in ctx.run_external.calls
	action.cleanup(ctx)
	assert loops["detach"] == ["/dev/loop7"]


def test_machine_path_never_detaches(ctx, machine, mounts, uuids, loops):
	action = make_action()
	action.verify(ctx)
	args = ["--artifactdir", ctx.artifactdir]
	action.pre_machine(ctx, machine, args)
	assert ctx.image == "/dev/disk/by-id/virtio-osbuilder-0"
	assert args[-2:] == ["--internal-image", "/dev/disk/by-id/virtio-osbuilder-0"]
	assert machine.images == [(os.path.join(ctx.artifactdir, "debian-rpi3.img"), "osbuilder-0")]
	action.run(ctx)
	assert mounts["mount"][0][0] == "/dev/disk/by-id/virtio-osbuilder-0-part2"
	action.cleanup(ctx)
	assert loops["setup"] == []
	assert loops["detach"] == []


def test_inside_machine_cleanup_does_not_detach(ctx, mounts, uuids, loops):
	action = make_action()
	action.verify(ctx)
	ctx.image = "/dev/disk/by-id/virtio-osbuilder-0"
	action.run(ctx)
	action.cleanup(ctx)
	assert len(mounts["umount"]) == 2
	assert loops["detach"] == []


def test_inside_machine_waits_for_partition_links(ctx, commands, mounts, uuids, monkeypatch):
	from osbuilder.lib import utils
	from osbuilder.lib.machine import IN_MACHINE_ENV
	monkeypatch.setenv(IN_MACHINE_ENV, "1")
	monkeypatch.setattr(utils, "have_external", lambda name: True)
	action = make_action()
	action.verify(ctx)
	ctx.image = "/dev/disk/by-id/virtio-osbuilder-0"
	action.run(ctx)
	settle = ["udevadm", "settle"]
	assert commands.calls[2] == settle
	assert commands.calls[3] == ["mkfs.vfat", "-n", "firmware", "/dev/disk/by-id/virtio-osbuilder-0-part1"]
	assert commands.calls[6] == settle
	assert commands.calls.count(settle) == 2
