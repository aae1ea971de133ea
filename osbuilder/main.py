import os
import shutil
import logging
import tempfile
import sys
from argparse import ArgumentParser, Namespace, SUPPRESS
from osbuilder.actions.action import parse_actions
from osbuilder.build.pipeline import Pipeline
from osbuilder.lib import config, utils
from osbuilder.lib.context import BuildContext
from osbuilder.lib.machine import Machine, detect_machine, in_machine
log = logging.getLogger(__name__)


def parse_arguments(ctx: BuildContext, argv: list[str] = None) -> Namespace:
	parser = ArgumentParser(
		prog="osbuilder",
		description="Build bootable OS images from a recipe",
	)
	parser.add_argument("recipe",              help="Recipe file to build")
	parser.add_argument("--artifactdir",       help="Set artifacts folder for builder")
	parser.add_argument("--internal-image",    help=SUPPRESS)
	parser.add_argument("--debug-shell",       help="Fall into interactive shell on error", default=False, action='store_true')
	parser.add_argument("-s", "--shell",       help="Interactive shell binary (default: /bin/bash)", default="/bin/bash")
	parser.add_argument("-d", "--debug",       help="Enable debug logging", default=False, action='store_true')
	parser.add_argument("--no-machine",        help="Never build inside a machine", default=False, action='store_true')
	parser.add_argument("-m", "--memory",      help="Machine memory in MiB", default=2048, type=int)
	parser.add_argument("-c", "--cpus",        help="Machine cpu count", default=None, type=int)
	parser.add_argument("-b", "--build-storage", help="Directory for temporary build image", default=None)
	parser.add_argument("--build-storage-size",  help="The size of the temporary build image", default="10gB")
	args = parser.parse_args(argv)

	# debug logging
	if args.debug:
		logging.root.setLevel(logging.DEBUG)
		log.debug("enabled debug logging")

	# set interactive shell only if debug shell wanted
	if args.debug_shell:
		ctx.debug_shell = args.shell

	ctx.artifactdir = utils.clean_path(args.artifactdir or os.getcwd())
	ctx.image = args.internal_image or ""
	return args


def machine_arguments(ctx: BuildContext, args: Namespace, recipe: str) -> list[str]:
	"""
	Arguments for relaunching the build inside a machine
	"""
	margs = ["--artifactdir", ctx.artifactdir]
	if args.debug_shell:
		margs.extend(["--debug-shell", "--shell", args.shell])
	if args.debug:
		margs.append("--debug")
	margs.append(recipe)
	return margs


def prepare_build_image(ctx: BuildContext, machine: Machine, location: str, size: int) -> str:
	"""
	Create a journal-less ext4 image in location and mount it as /scratch
	inside the machine, returns the image path to remove after the build
	"""
	if not os.path.isdir(location):
		raise NotADirectoryError(f"build storage {location} must be a directory")
	fd, path = tempfile.mkstemp(prefix=".osbuilder-build-", dir=location)
	try: os.ftruncate(fd, size)
	finally: os.close(fd)
	label = "/scratch"
	ret = ctx.run_external(["mkfs.ext4", "-q", "-L", label, path, "-O", "^has_journal"])
	if ret != 0:
		os.remove(path)
		raise OSError(f"mkfs.ext4 for build image {path} failed")
	machine.create_image(path, -1)
	machine.add_fstab_entry(f"LABEL={label}", label, "ext4", ["defaults"])
	log.info(f"build storage {path} with {size} bytes")
	return path


def check_system(machine: Machine | None):
	if machine is not None: return
	# building on the host needs raw block device access
	if os.getuid() != 0:
		raise PermissionError("building without a machine needs root")
	for tool in ["parted", "chroot"]:
		if not utils.have_external(tool):
			raise FileNotFoundError(f"{tool} not found")


def main(argv: list[str] = None) -> int:
	logging.basicConfig(stream=sys.stdout, level=logging.INFO)
	ctx = BuildContext()
	args = parse_arguments(ctx, argv)
	recipe_file = utils.clean_path(args.recipe)
	recipe = config.load_recipe(recipe_file)
	actions = parse_actions(recipe)

	machine = None
	if not args.no_machine:
		machine = detect_machine(ctx, memory=args.memory, cpus=args.cpus)
	check_system(machine)

	# machine builds never use scratch folder outside, just set /scratch
	tmpdir = None
	if in_machine() or machine is not None:
		ctx.set_scratchdir("/scratch")
	else:
		log.warning("machine not supported, running on the host!")
		tmpdir = tempfile.mkdtemp(prefix=".osbuilder-", dir=os.getcwd())
		ctx.set_scratchdir(tmpdir)
	ctx.recipe_dir = os.path.dirname(recipe_file)
	ctx.architecture = recipe["architecture"]
	ctx.init_origins()
	log.info(f"recipe:             {recipe_file}")
	log.info(f"architecture:       {ctx.architecture}")
	log.info(f"scratch folder:     {ctx.scratchdir}")
	log.info(f"artifacts folder:   {ctx.artifactdir}")

	margs: list[str] = []
	build_image = None
	if machine is not None:
		if args.build_storage:
			try:
				size = utils.human_size_to_bytes(args.build_storage_size)
				build_image = prepare_build_image(
					ctx, machine, utils.clean_path(args.build_storage), size,
				)
			except (OSError, ValueError) as e:
				log.error(f"failed to prepare build storage: {e}")
				return 1
		machine.add_volume(ctx.artifactdir)
		machine.add_volume(ctx.recipe_dir)
		margs = machine_arguments(ctx, args, recipe_file)

	try: result = Pipeline(ctx, actions, machine, margs).run()
	finally:
		if build_image: os.remove(build_image)
	if tmpdir:
		# failed builds may leave mounts behind, never remove through them
		if result.success: shutil.rmtree(tmpdir)
		else: log.warning(f"keeping scratch folder {tmpdir}")
	log.info("Exiting...")
	return result.exitcode


if __name__ == "__main__":
	sys.exit(main())
