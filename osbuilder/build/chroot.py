import os
from logging import getLogger
from osbuilder.lib import utils
from osbuilder.lib.context import BuildContext
from osbuilder.lib.cpu import cpu_arch_compatible, cpu_arch_get
log = getLogger(__name__)


def chroot_run(
	ctx: BuildContext,
	cmd: str | list[str],
	env: dict = None,
	stdin: str | bytes = None,
) -> int:
	"""
	Chroot into rootfs and run programs
	If you are running a cross build, you need install qemu-user-static binfmt
	"""
	if not ctx.rootdir or not os.path.isdir(ctx.rootdir):
		raise RuntimeError(f"rootfs {ctx.rootdir} is not ready for chroot")
	if ctx.architecture and not cpu_arch_compatible(ctx.architecture):
		log.warning(
			f"current cpu arch {cpu_arch_get()} is not compatible to {ctx.architecture}, "
			"you may need qemu-user-static binfmt to run incompatible executables",
		)
	args = ["chroot", ctx.rootdir]
	args.extend(utils.parse_cmd_args(cmd))
	full_env = os.environ.copy()
	if env: full_env.update(env)
	return ctx.run_external(args, env=full_env, stdin=stdin)
