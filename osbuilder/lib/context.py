import io
import os
from subprocess import Popen, PIPE
from logging import getLogger
from osbuilder.lib.utils import parse_cmd_args
log = getLogger(__name__)


class BuildContext:

	"""
	Scratch folder for build
	"""
	scratchdir: str = None

	"""
	Target rootfs folder
	"""
	rootdir: str = None

	"""
	Target debian architecture
	"""
	architecture: str = None

	"""
	Artifacts folder
	"""
	artifactdir: str = None

	"""
	Folder where the recipe lives
	"""
	recipe_dir: str = None

	"""
	Block target of the image (loop device or machine disk)
	"""
	image: str = None

	"""
	Mount root of the image partitions
	"""
	image_mnt_dir: str = None

	"""
	Generated fstab for the image
	"""
	image_fstab: io.StringIO = None

	"""
	Generated kernel root parameter (root=UUID=...)
	"""
	image_kernel_root: str = None

	"""
	Well known locations (artifacts, filesystem, recipe)
	"""
	origins: dict[str, str] = {}

	"""
	Interactive shell to run on failure
	"""
	debug_shell: str = None

	def __init__(self):
		self.image = ""
		self.image_mnt_dir = ""
		self.image_fstab = io.StringIO()
		self.image_kernel_root = ""
		self.origins = {}

	def set_scratchdir(self, scratchdir: str):
		"""
		Set scratch folder and derive rootfs folder
		"""
		self.scratchdir = scratchdir
		self.rootdir = os.path.join(scratchdir, "root")

	def init_origins(self):
		"""
		Populate well known locations
		"""
		self.origins = {
			"artifacts": self.artifactdir,
			"filesystem": self.rootdir,
			"recipe": self.recipe_dir,
		}

	def get_fstab(self) -> str:
		return self.image_fstab.getvalue()

	def run_external(
		self,
		cmd: str | list[str],
		/,
		cwd: str = None,
		env: dict = None,
		stdin: str | bytes = None,
		want_stdout: bool = False,
	) -> int | tuple[int, str]:
		"""
		Run external command
		run_external("parted -s /dev/loop0 mklabel gpt")
		"""
		args = parse_cmd_args(cmd)
		argv = " ".join(args)
		log.debug(f"running external command {argv}")
		fstdin = None if stdin is None else PIPE
		fstdout = None if not want_stdout else PIPE
		proc = Popen(args, cwd=cwd, env=env, stdin=fstdin, stdout=fstdout)
		if stdin:
			try:
				if type(stdin) is str: stdin = stdin.encode()
				proc.stdin.write(stdin)
				proc.stdin.close()
			except BrokenPipeError:
				pass
		if want_stdout:
			stdout = proc.stdout.read().decode()
		ret = proc.wait()
		log.debug(f"command exit with {ret}")
		if not want_stdout:
			return ret
		return (ret, stdout)
