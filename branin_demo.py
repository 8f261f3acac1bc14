import logging
import math

import numpy as np

from blocksqp.blocks.aux import SQPOptions
from blocksqp.blocks.problem import CallbackProblem
from blocksqp.blocks.stats import SQPStats
from blocksqp.sqp import SQPMethod

logging.basicConfig(level=logging.INFO, format="%(message)s")

# Branin with circular inequality
a, b, c, r, s, t = 1.0, 5.1 / (4 * math.pi**2), 5.0 / math.pi, 6.0, 10.0, 1 / (8 * math.pi)


def f(x):
    return a * (x[1] - b * x[0] ** 2 + c * x[0] - r) ** 2 + s * (1 - t) * math.cos(x[0]) + s


def grad_f(x):
    q = x[1] - b * x[0] ** 2 + c * x[0] - r
    return np.array([2 * a * q * (c - 2 * b * x[0]) - s * (1 - t) * math.sin(x[0]), 2 * a * q])


prob = CallbackProblem(2, 1)
prob.f = f
prob.grad_f = grad_f
prob.g = lambda x: np.array([x @ x])
prob.jac_g = lambda x: 2.0 * x[None, :]
prob.set_bounds(np.full(2, -np.inf), np.full(2, np.inf), [-np.inf], [60.0])
prob.x_start = np.array([-3.0, 12.0])
prob.complete()

meth = SQPMethod(prob, SQPOptions(print_level=2), SQPStats())
meth.init()
status = meth.run(150)
meth.finish()
print("status:", status.name)
print("x* =", meth.vars.xi)
