"""
gmath.py
~~~~~~~~

Scalar activation and cost functions used by the forward and backward passes.

Activation derivatives are expressed in terms of the *squashed* output, which
is the value every node caches after its forward evaluation.
"""

import math

# activation function flags
TANH = 0
TANHP = 1
SIGMOID = 2
LINEAR = 4
RELU = 5
LEAKY = 6
STEP = 7

ACTIVATIONS = {
    'tanh': TANH,
    'tanhp': TANHP,
    'sigmoid': SIGMOID,
    'linear': LINEAR,
    'relu': RELU,
    'leaky': LEAKY,
    'step': STEP,
}

# cost function flags
REGRESSION = 0
CLASSIFICATION = 1

DEFAULT_LEAKY_SLOPE = 0.01
_PROB_EPS = 1e-7


def sigmoid(x: float) -> float:
    # Split on sign so exp() never overflows
    if x >= 0.0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


def squash(x: float, activation_type: int, param: float = DEFAULT_LEAKY_SLOPE) -> float:
    """
    Apply an activation function.

    Args:
        x: Pre-activation value
        activation_type: One of the activation flags
        param: Slope of the negative half for LEAKY

    Returns:
        float: The activated value. Unknown flags behave as LINEAR.
    """
    if activation_type == TANH:
        return math.tanh(x)
    if activation_type == TANHP:
        return 0.5 * (math.tanh(x) + 1.0)
    if activation_type == SIGMOID:
        return sigmoid(x)
    if activation_type == RELU:
        return x if x > 0.0 else 0.0
    if activation_type == LEAKY:
        return x if x > 0.0 else param * x
    if activation_type == STEP:
        return 1.0 if x >= 0.0 else 0.0
    return x


def activation_err_der(y: float, activation_type: int, param: float = DEFAULT_LEAKY_SLOPE) -> float:
    """
    Derivative of the activation function, given its output ``y``.

    Args:
        y: Output previously returned by :func:`squash`
        activation_type: One of the activation flags
        param: Slope of the negative half for LEAKY

    Returns:
        float: d(squash)/dx evaluated where squash(x) == y
    """
    if activation_type == TANH:
        return 1.0 - y * y
    if activation_type == TANHP:
        return 2.0 * y * (1.0 - y)
    if activation_type == SIGMOID:
        return y * (1.0 - y)
    if activation_type == RELU:
        return 1.0 if y > 0.0 else 0.0
    if activation_type == LEAKY:
        return 1.0 if y > 0.0 else param
    if activation_type == STEP:
        return 0.0
    return 1.0


def is_saturating(activation_type: int) -> bool:
    """True for activations that flatten out at both ends."""
    return activation_type in (TANH, TANHP, SIGMOID, STEP)


def parse_activation(value) -> int:
    """Accept either an activation flag or its lowercase name."""
    if isinstance(value, str):
        try:
            return ACTIVATIONS[value.lower()]
        except KeyError:
            raise ValueError(f"Unknown activation '{value}'") from None
    return int(value)


def clip(value: float, limit: float) -> float:
    """Clip to ``[-limit, limit]``; a non-positive limit disables clipping."""
    if limit <= 0.0:
        return value
    if value > limit:
        return limit
    if value < -limit:
        return -limit
    return value


def clamp_prob01(p: float) -> float:
    # Keep probabilities away from {0, 1} so log() and divisions stay finite
    if p < _PROB_EPS:
        return _PROB_EPS
    if p > 1.0 - _PROB_EPS:
        return 1.0 - _PROB_EPS
    return p


def mean_squared_error(expected: float, predicted: float) -> float:
    diff = predicted - expected
    return 0.5 * diff * diff


def cross_entropy_cost(expected: float, predicted: float) -> float:
    p = clamp_prob01(predicted)
    return -(expected * math.log(p) + (1.0 - expected) * math.log(1.0 - p))


def output_node_cost(expected: float, predicted: float, cost_type: int) -> float:
    if cost_type == CLASSIFICATION:
        return cross_entropy_cost(expected, predicted)
    return mean_squared_error(expected, predicted)


def cost_err_der(expected: float, predicted: float, cost_type: int) -> float:
    """
    Derivative of the per-node cost with respect to the node's output.

    Args:
        expected: Target value
        predicted: Output of the node
        cost_type: REGRESSION (squared error) or CLASSIFICATION (cross entropy)

    Returns:
        float: dCost/dPredicted
    """
    if cost_type == CLASSIFICATION:
        p = clamp_prob01(predicted)
        return (p - expected) / (p * (1.0 - p))
    return predicted - expected
