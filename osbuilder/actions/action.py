from logging import getLogger
from osbuilder.lib.config import OSBuilderConfigError
from osbuilder.lib.context import BuildContext
from osbuilder.lib.machine import Machine
log = getLogger(__name__)


class Action:
	"""
	One build step of a recipe

	Phases are called by the pipeline for all actions in turn:
	verify -> pre_machine | pre_no_machine -> run -> cleanup -> post_machine
	pre_machine is used when the build is relaunched inside a machine,
	run and cleanup then happen inside that machine.
	"""
	name: str = None
	description: str = None
	config: dict

	def __init__(self, config: dict):
		self.config = config
		if "action" in config: self.name = config["action"]
		if "description" in config: self.description = config["description"]

	def log_start(self):
		log.info(f"==== {self.description or self.name} ====")

	def verify(self, ctx: BuildContext): pass
	def pre_machine(self, ctx: BuildContext, machine: Machine, args: list[str]): pass
	def pre_no_machine(self, ctx: BuildContext): pass
	def run(self, ctx: BuildContext): pass
	def cleanup(self, ctx: BuildContext): pass
	def post_machine(self, ctx: BuildContext): pass

	def __str__(self) -> str:
		return self.description or self.name or self.__class__.__name__


class Actions:
	types: list[tuple[str, type[Action]]] = []

	@staticmethod
	def init():
		if len(Actions.types) > 0: return
		from osbuilder.actions.types import types
		Actions.types.extend(types)

	@staticmethod
	def find_action(name: str) -> type[Action]:
		Actions.init()
		return next((t[1] for t in Actions.types if name == t[0]), None)


def parse_actions(recipe: dict) -> list[Action]:
	"""
	Create action instances from recipe
	"""
	actions: list[Action] = []
	for cfg in recipe["actions"]:
		t = Actions.find_action(cfg["action"])
		if t is None: raise OSBuilderConfigError(
			f"unknown action {cfg['action']}"
		)
		actions.append(t(cfg))
	return actions
