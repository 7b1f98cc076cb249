import logging

import numpy as np
import pytest

from matgrad.autograd import Arena, leaf
from matgrad.dense_matrix import DenseMatrix
from matgrad.examples import train_xor
from matgrad.nn import MLP, SGD, Module, train, xavier_normal, xor_dataset


def _xor_nodes():
    x, y = xor_dataset()
    x_node = leaf(DenseMatrix.from_numpy(x), requires_grad=False)
    y_node = leaf(DenseMatrix.from_numpy(y), requires_grad=False)
    return x, y, x_node, y_node


def test_xor_dataset():
    x, y = xor_dataset()
    assert x.shape == (3, 4)
    assert y.shape == (1, 4)
    np.testing.assert_array_equal(x[2], np.ones(4))
    np.testing.assert_array_equal(y[0], np.logical_xor(x[0], x[1]).astype(float))


def test_xavier_normal_scale():
    w = xavier_normal(200, 300, np.random.RandomState(0))
    assert w.shape == (200, 300)
    assert np.std(w) == pytest.approx(np.sqrt(2.0 / 500), rel=0.05)


def test_module_registers_parameters():
    model = MLP(3, 4, 1, seed=0)
    names = [name for name, _ in model.named_parameters()]
    assert names == ["W1", "W2"]
    assert model.W1.shape == (4, 3)
    assert model.W2.shape == (1, 4)
    with pytest.raises(NotImplementedError):
        Module().forward()


def test_sgd_step():
    w = leaf(DenseMatrix(1, 2, [1.0, 2.0]))
    w.grad.fill(1.0)
    optimizer = SGD([w], lr=0.5)
    optimizer.step()
    np.testing.assert_allclose(w.value.to_numpy(), [[0.5, 1.5]])
    optimizer.zero_grad()
    np.testing.assert_array_equal(w.grad.to_numpy(), [[0.0, 0.0]])


def test_train_releases_graph_every_epoch():
    _, _, x_node, y_node = _xor_nodes()
    model = MLP(3, 4, 1, seed=0)
    arena = Arena()
    history = train(model, SGD(model.parameters(), lr=1.0), x_node, y_node, epochs=10,
                    arena=arena, log_every=5)
    assert len(history) == 2
    assert len(arena) == 0


def test_xor_converges(caplog):
    x, y, x_node, y_node = _xor_nodes()
    model = MLP(3, 16, 1, seed=0)
    optimizer = SGD(model.parameters(), lr=2.0)
    with caplog.at_level(logging.INFO, logger="matgrad.nn"):
        history = train(model, optimizer, x_node, y_node, epochs=5000, log_every=1000)
    assert len(history) == 5
    assert history[-1] < history[0]
    assert history[-1] < 0.1
    assert "Epoch 5000/5000" in caplog.text

    predictions = model.predict(x_node)
    np.testing.assert_array_equal(predictions > 0.5, y > 0.5)


def test_example_cli_dense(caplog):
    with caplog.at_level(logging.INFO):
        train_xor.main(["--backend", "dense", "--epochs", "200", "--log-every", "100"])
    assert "sample 3" in caplog.text
