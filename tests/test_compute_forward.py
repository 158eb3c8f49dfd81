import numpy as np
import pytest

from graphgrad.compute import forward_pass, backward_pass, seed_grad
from graphgrad.node import NodeType, constant_node, input_node, op_node, params_node
from tests.utils import CountingMulOp, DoubleOp, assert_close, find, to_numpy


def test_shared_child_is_evaluated_once(rng, model):
    op = CountingMulOp()
    model.tensor_factory().register_op(op.key, op)

    x = input_node("x", (3,))
    shared = op_node("shared", "counting_mul", [x, x], (3,))
    left = op_node("left", "counting_mul", [shared, x], (3,))
    right = op_node("right", "counting_mul", [shared, shared], (3,))
    top = op_node("top", "add", [left, right], (3,))
    x_np = rng.normal(size=(3,)).astype(np.float32)

    out = forward_pass(top, model, {"x": x_np})

    assert op.forward_calls.count("shared") == 1
    assert sorted(op.forward_calls) == ["left", "right", "shared"]
    assert op.prepped.count("shared") == 1

    s = x_np * x_np
    assert_close(out.value, s * x_np + s * s)
    assert find(out, "left").children[0] is find(out, "right").children[0]


def test_prep_scratch_state_is_attached(model):
    op = CountingMulOp()
    model.tensor_factory().register_op(op.key, op)
    x = input_node("x", (2,))
    y = op_node("y", "counting_mul", [x, x], (2,))

    out = forward_pass(y, model, {"x": np.ones(2, np.float32)})

    assert out.aux["prepped"] is True
    assert out.tensor_op is op


def test_forward_matches_numpy(rng, model):
    x = input_node("x", (5, 3))
    w = params_node("w", (3, 4))
    b = params_node("b", (4,))
    xw = op_node("xw", "matmul", [x, w], (5, 4))
    z = op_node("z", "add", [xw, b], (5, 4))
    h = op_node("h", "tanh", [z], (5, 4))

    w_node = model.add_params("w", (3, 4))
    b_node = model.add_params("b", (4,))
    x_np = rng.normal(size=(5, 3)).astype(np.float32)

    out = forward_pass(h, model, {"x": x_np})

    expected = np.tanh(x_np @ to_numpy(w_node.value) + to_numpy(b_node.value))
    assert_close(out.value, expected, atol=1e-5)


def test_template_graph_is_not_decorated_and_can_be_reused(rng, model):
    x = input_node("x", (4,))
    y = op_node("y", "exp", [x], (4,))

    for _ in range(2):
        x_np = rng.normal(size=(4,)).astype(np.float32)
        out = forward_pass(y, model, {"x": x_np})
        assert_close(out.value, np.exp(x_np))
        seed_grad(out, model)
        backward_pass(out)

    assert y.value is None and y.grad is None and y.tensor_op is None
    assert x.value is None


def test_params_resolve_to_canonical_node(model):
    w = model.add_params("w", (2, 2), init=np.eye(2, dtype=np.float32))
    p = params_node("w", (2, 2))
    y = op_node("y", "mul", [p, p], (2, 2))

    out = forward_pass(y, model)

    assert out.children[0] is w
    assert out.children[1] is w
    assert p.value is None
    assert_close(out.value, np.eye(2, dtype=np.float32))


def test_constant_leaf_lives_on_the_model_device(model):
    c = constant_node("c", [1.0, 2.0, 3.0])
    x = input_node("x", (3,))
    y = op_node("y", "mul", [c, x], (3,))

    out = forward_pass(y, model, {"x": [2.0, 2.0, 2.0]})

    assert isinstance(out.children[0].value, model.tensor_factory().xp.ndarray)
    assert isinstance(c.value, np.ndarray)
    assert out.children[0].grad is None
    assert_close(out.value, [2.0, 4.0, 6.0])
    assert model.tensor_factory().pool.acquired == 3  # x.value, y.value, y.grad


def test_input_nodes_get_no_gradient_buffer(model):
    x = input_node("x", (2,))
    y = op_node("y", "relu", [x], (2,))

    out = forward_pass(y, model, {"x": [-1.0, 2.0]})

    assert out.children[0].grad is None
    assert out.grad is not None
    assert_close(out.value, [0.0, 2.0])


def test_leaf_target_returns_copied_input(model):
    x = input_node("x", (2, 2))
    x_np = np.arange(4, dtype=np.float32).reshape(2, 2)

    out = forward_pass(x, model, {"x": x_np})

    assert out.type == NodeType.INPUT
    assert out is not x
    assert_close(out.value, x_np)


def test_inputs_default_to_empty(model):
    model.add_params("a", (3,), init=[1.0, 2.0, 3.0])
    y = op_node("y", "sum", [params_node("a", (3,))], ())

    out = forward_pass(y, model)

    assert float(to_numpy(out.value)) == pytest.approx(6.0)


def test_inputs_are_cast_to_factory_dtype(model):
    x = input_node("x", (3,))
    y = op_node("y", "add", [x, x], (3,))

    out = forward_pass(y, model, {"x": np.array([1, 2, 3], dtype=np.int64)})

    assert out.value.dtype == np.float32
    assert_close(out.value, [2.0, 4.0, 6.0])


def test_operation_without_output_shape_runs(model):
    op = DoubleOp()
    model.tensor_factory().register_op(op.key, op)
    w = model.add_params("w", (2,), init=[1.0, -3.0])
    y = op_node("y", "double", [params_node("w", (2,))], (2,))
    loss = op_node("loss", "sum", [y], ())

    out = forward_pass(loss, model)
    assert_close(out.children[0].value, [2.0, -6.0])
    seed_grad(out, model)
    backward_pass(out)

    assert_close(w.grad, [2.0, 2.0])
    assert model.tensor_factory().pool.outstanding == 0
