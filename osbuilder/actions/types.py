from osbuilder.actions.action import Action
from osbuilder.actions.apt import AptAction
from osbuilder.actions.partition import ImagePartitionAction


types: list[tuple[str, type[Action]]] = [
	("apt",             AptAction),
	("image-partition", ImagePartitionAction),
]
