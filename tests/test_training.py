import numpy as np
import pytest

from graphgrad.model import Model
from graphgrad.node import input_node, op_node, params_node
from graphgrad.optim import SGD
from graphgrad.training import fit, train_step


def _regression_loss(n=8):
    x = input_node("x", (n, 3))
    y = input_node("y", (n, 1))
    pred = op_node("pred", "add", [
        op_node("xw", "matmul", [x, params_node("w", (3, 1))], (n, 1)),
        params_node("b", (1,)),
    ], (n, 1))
    diff = op_node("diff", "sub", [pred, y], (n, 1))
    return op_node("loss", "sum", [op_node("sq", "mul", [diff, diff], (n, 1))], ())


def _batches(rng, n_batches=4, n=8):
    w_true = np.array([[1.5], [-2.0], [0.5]], dtype=np.float32)
    batches = []
    for _ in range(n_batches):
        x = rng.normal(size=(n, 3)).astype(np.float32)
        batches.append({"x": x, "y": x @ w_true + 0.3})
    return batches


def _model():
    model = Model(seed=1)
    model.add_params("w", (3, 1), scale=0.1)
    model.add_params("b", (1,), init=[0.0])
    return model


def test_train_step_returns_loss_and_updates_params(rng):
    model = _model()
    opt = SGD(model.params(), lr=0.01)
    batch = _batches(rng, n_batches=1)[0]
    w_before = model.canonical_node("w").value.copy()

    loss = train_step(_regression_loss(), model, opt, batch)

    assert isinstance(loss, float)
    assert loss > 0
    assert not np.allclose(model.canonical_node("w").value, w_before)
    assert model.tensor_factory().pool.outstanding == 0


def test_fit_reduces_loss(rng, capsys):
    model = _model()
    opt = SGD(model.params(), lr=0.02, momentum=0.9)

    history = fit(_regression_loss(), model, opt, _batches(rng), num_epochs=30)

    losses = history["train_loss"]
    assert len(losses) == 30
    assert losses[-1] < 0.1 * losses[0]
    assert "Epoch 30/30" in capsys.readouterr().out
    assert model.canonical_node("w").value[0, 0] == pytest.approx(1.5, abs=0.1)


def test_fit_quiet(rng, capsys):
    model = _model()
    fit(_regression_loss(), model, SGD(model.params(), lr=0.01), _batches(rng, 1), num_epochs=2, verbose=False)
    assert capsys.readouterr().out == ""
