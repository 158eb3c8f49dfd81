import numpy as np
import torch

from graphgrad.errors import ValidationError
from graphgrad.node import Node
from graphgrad.ops import BatchTensorOp, TensorOp, MulOp, TanhOp

ATOL = 1e-6
RTOL = 1e-5

def _is_cupy(x):
    return x.__class__.__module__.startswith("cupy")

def to_numpy(x):
    if _is_cupy(x):
        import cupy as cp
        return cp.asnumpy(x)
    return np.asarray(x)

def make_torch(x_np: np.ndarray, requires_grad: bool = True) -> torch.Tensor:
    return torch.tensor(np.asarray(x_np, dtype=np.float32), requires_grad=requires_grad)

def assert_close(a, b, atol=ATOL, rtol=RTOL):
    a = to_numpy(a)
    b = to_numpy(b)
    assert np.allclose(a, b, atol=atol, rtol=rtol), f"max|diff|={np.max(np.abs(a-b))}"

def find(target: Node, ref_name: str) -> Node:
    """Return the node named ``ref_name`` reachable from ``target``."""
    stack = [target]
    while stack:
        n = stack.pop()
        if n.ref_name == ref_name:
            return n
        stack.extend(n.children)
    raise KeyError(ref_name)


class CountingMulOp(MulOp):
    """Elementwise multiply that records how often each pass ran."""
    key = "counting_mul"

    def __init__(self):
        self.forward_calls = []
        self.backward_calls = []
        self.prepped = []

    def prep(self, node):
        node.aux["prepped"] = True
        self.prepped.append(node.ref_name)
        return node

    def forward_pass(self, node):
        self.forward_calls.append(node.ref_name)
        return super().forward_pass(node)

    def backward_pass(self, node):
        self.backward_calls.append(node.ref_name)
        return super().backward_pass(node)


class RecordingTanhOp(TanhOp):
    """Tanh that records the groups handed to its batched passes."""
    key = "recording_tanh"

    def __init__(self):
        self.forward_groups = []
        self.backward_groups = []

    def batch_forward_pass(self, signature, nodes):
        self.forward_groups.append([n.ref_name for n in nodes])
        return super().batch_forward_pass(signature, nodes)

    def batch_backward_pass(self, signature, nodes):
        self.backward_groups.append([n.ref_name for n in nodes])
        return super().batch_backward_pass(signature, nodes)


class PlainNegOp(TensorOp):
    """Negation without batch support."""
    key = "neg"

    def __init__(self):
        self.forward_calls = []

    def output_shape(self, children):
        return tuple(children[0].shape)

    def forward_pass(self, node):
        self.forward_calls.append(node.ref_name)
        node.value[...] = -node.children[0].value
        return node

    def backward_pass(self, node):
        child = node.children[0]
        if child.grad is not None:
            child.grad -= node.grad
        return node


class TrivialBatchTanhOp(TanhOp):
    """Tanh using the default per-node batch fallback."""
    key = "trivial_tanh"

    def __init__(self):
        self.forward_calls = []

    def forward_pass(self, node):
        self.forward_calls.append(node.ref_name)
        return super().forward_pass(node)

    batch_forward_pass = BatchTensorOp.batch_forward_pass
    batch_backward_pass = BatchTensorOp.batch_backward_pass


class DoubleOp(TensorOp):
    """Doubles its operand; implements only validation and the two passes."""
    key = "double"

    def ensure_valid(self, children):
        if len(children) != 1:
            raise ValidationError(self.key, children, "takes exactly one operand")

    def forward_pass(self, node):
        node.value[...] = 2 * node.children[0].value
        return node

    def backward_pass(self, node):
        child = node.children[0]
        if child.grad is not None:
            child.grad += 2 * node.grad
        return node
