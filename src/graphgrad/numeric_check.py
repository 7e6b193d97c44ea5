import logging
import math
from dataclasses import dataclass, field

import torch

from .dependencies import Dependencies
from .errors import NumericCheckFailure
from .fill import generate_input_data

logger = logging.getLogger(__name__)


@dataclass
class NumericCheckReport:
    param_errs: list = field(default_factory=list)
    input_errs: list = field(default_factory=list)
    param_failures: int = 0
    input_failures: int = 0


class _Setup:
    """Leaf classification and the full-gradient subgraph, shared by every trial."""
    __slots__ = ('input_ids', 'parameter_ids', 'subgraph', 'shapes')

    def __init__(self, graph):
        leaves = Dependencies(graph).leaf_node_ids()
        self.input_ids = [n for n in leaves if not graph.is_parameter(n)]
        self.parameter_ids = [n for n in leaves if graph.is_parameter(n)]
        node_ids = self.input_ids + self.parameter_ids
        self.subgraph = graph.subgraph(
            [n.value_id() for n in node_ids],
            [n.gradient_id() for n in node_ids])
        self.shapes = graph.static_shapes().resolve(node_ids)


def step(step_size, node_ids, data, results):
    """
    Take a step of size step_size in each direction along the normalised gradient.

    Returns (data stepped against the gradient, data stepped along it, gradient norm).
    """
    grad_dot = sum(float(results[n.gradient_id()].pow(2).sum()) for n in node_ids)
    grad_norm = math.sqrt(grad_dot)
    scale = step_size / grad_norm if grad_norm > 0 else math.nan
    minus = [d - scale * results[n.gradient_id()] for d, n in zip(data, node_ids)]
    plus = [d + scale * results[n.gradient_id()] for d, n in zip(data, node_ids)]
    return minus, plus, grad_norm


def _relative_error(step_size, grad_norm, loss_1, loss_2):
    expected_diff = 2.0 * step_size * grad_norm
    diff = loss_2 - loss_1
    denominator = max(abs(diff), abs(expected_diff))
    if denominator == 0:
        return math.nan
    return abs(expected_diff - diff) / denominator


def numeric_error(graph, step_size, default_variance, override_distributions=None,
                  dtype=torch.float64, generator=None, _setup=None):
    """
    Relative error of the analytic derivatives w.r.t. parameters and inputs.

    A small step along the gradient should change the loss by
    2 * step_size * |gradient|. Returns (param_err, input_err); either is 0.0
    when the graph has no leaves of that kind.
    """
    setup = _setup or _Setup(graph)
    sample = dict(override_distributions=override_distributions, dtype=dtype, generator=generator)
    inputs_0 = generate_input_data(setup.shapes, setup.input_ids, default_variance, **sample)
    params_0 = generate_input_data(setup.shapes, setup.parameter_ids, default_variance, **sample)

    output_0 = setup.subgraph.execute(inputs_0 + params_0)

    param_err = 0.0
    if setup.parameter_ids:
        params_1, params_2, grad_norm = step(step_size, setup.parameter_ids, params_0, output_0)
        loss_1 = setup.subgraph.execute(inputs_0 + params_1).loss
        loss_2 = setup.subgraph.execute(inputs_0 + params_2).loss
        param_err = _relative_error(step_size, grad_norm, loss_1, loss_2)

    input_err = 0.0
    if setup.input_ids:
        inputs_1, inputs_2, grad_norm = step(step_size, setup.input_ids, inputs_0, output_0)
        loss_1 = setup.subgraph.execute(inputs_1 + params_0).loss
        loss_2 = setup.subgraph.execute(inputs_2 + params_0).loss
        input_err = _relative_error(step_size, grad_norm, loss_1, loss_2)

    return param_err, input_err


def numeric_test(iters, failures, tolerance, graph, step_size, default_variance,
                 override_distributions=None, dtype=torch.float64, generator=None):
    """
    Repeat numeric_error `iters` times with fresh samples.

    A trial fails when its relative error exceeds `tolerance` or is not
    finite. Up to `failures` failed trials are allowed for parameters and for
    inputs each, since a random sample can land on an ill-conditioned point.
    """
    setup = _Setup(graph)
    report = NumericCheckReport()
    for _ in range(iters):
        param_err, input_err = numeric_error(graph, step_size, default_variance, override_distributions,
                                             dtype=dtype, generator=generator, _setup=setup)
        report.param_errs.append(param_err)
        report.input_errs.append(input_err)
        if not math.isfinite(param_err) or param_err > tolerance:
            report.param_failures += 1
        if not math.isfinite(input_err) or input_err > tolerance:
            report.input_failures += 1

    logger.info("Numeric check over %d iterations: %d param failures, %d input failures (allowed %d)",
                iters, report.param_failures, report.input_failures, failures)

    if report.param_failures > failures or report.input_failures > failures:
        raise NumericCheckFailure(
            f"param error failures: {report.param_failures}, input error failures: {report.input_failures}"
            f" (allowed {failures}, tolerance {tolerance})",
            report.param_errs, report.input_errs)
    return report
