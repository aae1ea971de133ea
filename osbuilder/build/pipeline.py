import os
from typing import Callable
from logging import getLogger
from osbuilder.actions.action import Action
from osbuilder.lib.context import BuildContext
from osbuilder.lib.machine import Machine, in_machine
log = getLogger(__name__)


class BuildResult:
	"""
	Outcome of a whole build
	"""
	success: bool = True
	stage: str = None
	action: Action = None
	error: BaseException = None
	exitcode: int = 0

	def __init__(
		self,
		success: bool = True,
		stage: str = None,
		action: Action = None,
		error: BaseException = None,
		exitcode: int = None,
	):
		self.success = success
		self.stage = stage
		self.action = action
		self.error = error
		if exitcode is None: exitcode = 0 if success else 1
		self.exitcode = exitcode

	def __repr__(self) -> str:
		if self.success: return "BuildResult(success)"
		return f"BuildResult(failed at {self.stage} of {self.action}: {self.error})"


def debug_shell(ctx: BuildContext):
	"""
	Drop into an interactive shell to inspect a failed build
	"""
	if not ctx.debug_shell: return
	cwd = ctx.rootdir
	if not cwd or not os.path.isdir(cwd): cwd = ctx.scratchdir
	log.info(f"starting debug shell {ctx.debug_shell} in {cwd}")
	env = os.environ.copy()
	env["PS1"] = "(osbuilder) \\w # "
	try: ctx.run_external([ctx.debug_shell], cwd=cwd, env=env)
	except OSError as e: log.warning(f"failed to start debug shell: {e}")


class Pipeline:
	"""
	Run recipe actions phase by phase
	"""
	ctx: BuildContext
	actions: list[Action]
	machine: Machine = None
	args: list[str]

	def __init__(
		self,
		ctx: BuildContext,
		actions: list[Action],
		machine: Machine = None,
		args: list[str] = None,
	):
		self.ctx = ctx
		self.actions = actions
		self.machine = machine
		self.args = list(args) if args else []

	def fail(self, stage: str, action: Action, error: BaseException) -> BuildResult:
		log.error(f"Action `{action}` failed at stage {stage}, error: {error}")
		log.debug("failure details", exc_info=error)
		debug_shell(self.ctx)
		return BuildResult(False, stage, action, error)

	def run_stage(
		self,
		stage: str,
		call: Callable[[Action], None],
		actions: list[Action] = None,
	) -> BuildResult | None:
		"""
		Call one phase on every action, stop at the first error
		"""
		if actions is None: actions = self.actions
		log.debug(f"running stage {stage}")
		for action in actions:
			try: call(action)
			except Exception as e:
				return self.fail(stage, action, e)
		return None

	def run_actions(self) -> BuildResult | None:
		"""
		Run phase, cleanup actions already run when one of them fails
		"""
		done: list[Action] = []
		for action in self.actions:
			try: action.run(self.ctx)
			except Exception as e:
				result = self.fail("Run", action, e)
				self.compensate(done)
				return result
			done.append(action)
		return None

	def compensate(self, done: list[Action]):
		for action in reversed(done):
			try: action.cleanup(self.ctx)
			except Exception as e:
				log.error(f"Action `{action}` failed at stage Cleanup, error: {e}")

	def run_machine(self) -> BuildResult:
		ctx = self.ctx
		args = list(self.args)
		err = self.run_stage(
			"PreMachine",
			lambda a: a.pre_machine(ctx, self.machine, args),
		)
		if err: return err
		log.info("running build inside machine")
		try: exitcode = self.machine.run_in_machine(args)
		except Exception as e:
			log.error(f"failed to run machine: {e}")
			return BuildResult(False, "Machine", None, e)
		if exitcode != 0:
			log.error(f"machine build failed with {exitcode}")
			return BuildResult(False, "Machine", None, None, exitcode)
		err = self.run_stage("PostMachine", lambda a: a.post_machine(ctx))
		if err: return err
		log.info("==== Recipe done ====")
		return BuildResult()

	def run_host(self) -> BuildResult:
		"""
		Run phases here, Cleanup goes in reverse action order (reverse of acquisition)
		"""
		ctx = self.ctx
		inside = in_machine()
		if not inside:
			err = self.run_stage("PreNoMachine", lambda a: a.pre_no_machine(ctx))
			if err: return err
		err = self.run_actions()
		if err: return err
		err = self.run_stage(
			"Cleanup",
			lambda a: a.cleanup(ctx),
			list(reversed(self.actions)),
		)
		if err: return err
		if not inside:
			err = self.run_stage("PostMachine", lambda a: a.post_machine(ctx))
			if err: return err
			log.info("==== Recipe done ====")
		return BuildResult()

	def run(self) -> BuildResult:
		"""
		Run the whole recipe
		"""
		err = self.run_stage("Verify", lambda a: a.verify(self.ctx))
		if err: return err
		if self.machine is not None and not in_machine():
			return self.run_machine()
		return self.run_host()
