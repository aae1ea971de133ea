import os
from logging import getLogger
log = getLogger(__name__)

debian_policy_helper = "usr/sbin/policy-rc.d"
deny_helper = "#!/bin/sh\nexit 101\n"


def policy_helper_path(root: str) -> str:
	return os.path.join(root, debian_policy_helper)


def deny_services(root: str):
	"""
	Forbid package scripts to start / stop services in rootfs
	invoke-rc.d honors policy-rc.d exit code 101 (action forbidden)
	"""
	path = policy_helper_path(root)
	if os.path.exists(path):
		raise FileExistsError(f"policy helper file {path} exists already")
	os.makedirs(os.path.dirname(path), mode=0o0755, exist_ok=True)
	log.debug(f"create policy helper {path}")
	with open(path, "w") as f:
		f.write(deny_helper)
	os.chmod(path, 0o0755)


def allow_services(root: str):
	"""
	Allow package scripts to start / stop services in rootfs again
	"""
	path = policy_helper_path(root)
	if not os.path.exists(path): return
	log.debug(f"remove policy helper {path}")
	os.remove(path)
