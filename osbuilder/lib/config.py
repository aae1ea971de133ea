import os
import json
import yaml
from logging import getLogger
log = getLogger(__name__)


class OSBuilderConfigError(Exception):
	pass


def load_recipe_file(path: str) -> dict:
	"""
	Load one recipe (yaml/json) from file
	"""
	log.debug(f"try to open recipe {path}")
	try:
		with open(path, "r") as f:
			if path.endswith((".jsn", ".json")):
				log.debug(f"load {path} as json")
				loaded = json.load(f)
			else:
				log.debug(f"load {path} as yaml")
				loaded = yaml.safe_load(f)
		log.info(f"loaded recipe {path}")
	except BaseException:
		log.error(f"failed to load recipe {path}")
		raise
	if loaded is None:
		raise OSBuilderConfigError(f"recipe {path} is empty")
	if type(loaded) is not dict:
		raise OSBuilderConfigError(f"recipe {path} is not a mapping")
	return loaded


def check_recipe(recipe: dict):
	"""
	Check top level recipe fields
	"""
	if "architecture" not in recipe or not recipe["architecture"]:
		raise OSBuilderConfigError("no architecture set")
	if "actions" not in recipe:
		raise OSBuilderConfigError("no actions set")
	actions = recipe["actions"]
	if type(actions) is not list or len(actions) <= 0:
		raise OSBuilderConfigError("actions must be a non-empty list")
	for idx, action in enumerate(actions):
		if type(action) is not dict or "action" not in action:
			raise OSBuilderConfigError(f"action #{idx + 1} has no action type")


def load_recipe(path: str) -> dict:
	"""
	Load and check a recipe
	"""
	if not os.path.exists(path):
		raise FileNotFoundError(f"recipe {path} not found")
	recipe = load_recipe_file(path)
	check_recipe(recipe)
	jstr = json.dumps(recipe, indent=2, default=str)
	log.debug(f"loaded recipe:\n {jstr}")
	return recipe
