class GraphError(Exception):
    """Base class for every error raised by the engine."""


class ShapeConflict(GraphError):
    """A shape merge or collapse failed, or a buffer did not fit its node."""

    def __init__(self, message, node=None, op=None):
        where = []
        if op is not None:
            where.append(f"op '{op}'")
        if node is not None:
            where.append(f"node '{node}'")
        prefix = f"[{', '.join(where)}] " if where else ""
        super().__init__(prefix + message)
        self.node = node
        self.op = op


class MissingDependency(GraphError):
    """Data needed by a request can be neither supplied nor computed."""

    def __init__(self, message, data_id=None):
        super().__init__(message)
        self.data_id = data_id


class CyclicDependency(GraphError):
    pass


class PassError(GraphError):
    """Runtime failure inside one pass; aborts the enclosing execute call."""

    def __init__(self, pass_name, message):
        super().__init__(f"Pass '{pass_name}': {message}")
        self.pass_name = pass_name
        self.message = message


class NumericCheckFailure(GraphError):
    def __init__(self, message, param_errs=(), input_errs=()):
        super().__init__(message)
        self.param_errs = list(param_errs)
        self.input_errs = list(input_errs)
