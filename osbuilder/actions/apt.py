"""
Apt action

Install packages and their dependencies to the target rootfs with apt.

 - action: apt
   recommends: false
   allow-services: false
   packages:
     - package1
     - package2
"""
from logging import getLogger
from osbuilder.actions.action import Action
from osbuilder.build.chroot import chroot_run
from osbuilder.lib import policy
from osbuilder.lib.config import OSBuilderConfigError
from osbuilder.lib.context import BuildContext
log = getLogger(__name__)


class AptAction(Action):
	recommends: bool = False
	packages: list[str] = []
	allow_services: bool = False

	def __init__(self, config: dict):
		super().__init__(config)
		self.recommends = bool(config.get("recommends", False))
		self.allow_services = bool(config.get("allow-services", False))
		packages = config.get("packages") or []
		if type(packages) is str: packages = packages.split()
		if type(packages) is not list: raise OSBuilderConfigError("bad packages")
		self.packages = [str(p) for p in packages]

	def verify(self, ctx: BuildContext):
		if len(self.packages) <= 0:
			raise OSBuilderConfigError("no packages to install")

	def apt_get(self, ctx: BuildContext, *args: str):
		env = {"DEBIAN_FRONTEND": "noninteractive"}
		cmds = ["apt-get"]
		cmds.extend(args)
		ret = chroot_run(ctx, cmds, env=env)
		if ret != 0: raise OSError(f"{' '.join(cmds)} failed")

	def run(self, ctx: BuildContext):
		self.log_start()
		install = ["-y"]
		if not self.recommends:
			install.append("--no-install-recommends")
		install.append("install")
		install.extend(self.packages)
		if not self.allow_services:
			policy.deny_services(ctx.rootdir)
		try:
			self.apt_get(ctx, "update")
			self.apt_get(ctx, *install)
			self.apt_get(ctx, "clean")
		finally:
			if not self.allow_services:
				policy.allow_services(ctx.rootdir)
		log.info(f"installed {len(self.packages)} packages")
