"""
Lookup of per-event inputs supplied by the framework under fixed node names.
"""


class MissingNodeError(RuntimeError):
    def __init__(self, node_name, module_name=""):
        where = f"{module_name}: " if module_name else ""
        super().__init__(f"{where}{node_name} Node missing, abort.")
        self.node_name = node_name
        self.module_name = module_name


def find_node(top_node, node_name, required=False, module_name=""):
    """
    Return the object stored under node_name in top_node.

    A missing required node raises MissingNodeError; a missing optional node
    returns None.
    """
    node = top_node.get(node_name) if top_node is not None else None
    if node is None and required:
        raise MissingNodeError(node_name, module_name)
    return node


def add_node(top_node, node_name, obj):
    top_node[node_name] = obj
    return obj
