import numpy as np
import pytest

from oolon import Network, NetworkState, lenet
from oolon.errors import DatasetError, ShapeError
from oolon.layers import DataSource, FullyConnected, Activation, Output


def small_net(backend, batch_size=8, **kwargs):
    kwargs.setdefault("verbose", 0)
    kwargs.setdefault("seed", 0)
    net = Network(batch_size=batch_size, backend=backend, **kwargs)
    net.add(DataSource("data", 1, 2, 2))
    net.add(FullyConnected("fc1", 6))
    net.add(Activation("tanh1", "tanh"))
    net.add(FullyConnected("fc2", 2))
    net.add(Output("out"))
    return net.assemble()


def batch_loss(net, images, labels):
    net.data.load_batch(images[:net.batch_size], labels[:net.batch_size])
    net.forward_propagate()
    return net.output_layer.loss()


def test_state_machine(backend):
    net = Network(batch_size=2, backend=backend, verbose=0)
    assert net.state is NetworkState.UNINITIALIZED
    with pytest.raises(RuntimeError):
        net.forward_propagate()
    net.add(DataSource("data", 1, 1, 2))
    net.add(Output("out"))
    net.assemble()
    assert net.state is NetworkState.ASSEMBLED
    with pytest.raises(RuntimeError):
        net.add(FullyConnected("late", 2))
    net.destroy()
    assert net.state is NetworkState.DESTROYED
    with pytest.raises(RuntimeError):
        net.forward_propagate()


def test_assemble_requires_output_sinks(backend):
    net = Network(batch_size=2, backend=backend, verbose=0)
    net.add(DataSource("data", 1, 1, 2))
    net.add(FullyConnected("fc", 2))
    with pytest.raises(ShapeError):
        net.assemble()


def test_duplicate_names_rejected(backend):
    net = Network(batch_size=2, backend=backend, verbose=0)
    net.add(DataSource("data", 1, 1, 2))
    net.add(FullyConnected("fc", 2))
    with pytest.raises(ShapeError):
        net.add(FullyConnected("fc", 2))


def test_workspace_sized_to_largest_convolution(backend):
    net = lenet(batch_size=2, backend=backend, verbose=0)
    conv_needs = [L.workspace_size for L in net.layers if L.workspace_size]
    assert len(conv_needs) == 2
    assert net.workspace_bytes == max(conv_needs)
    assert net.workspace.nbytes >= net.workspace_bytes
    assert np.all(net.ones == 1.0) and net.ones.shape == (2,)


def test_learning_rate_schedule(backend, toy_set):
    images, labels = toy_set
    r0, gamma, power = 0.05, 0.01, 0.75
    net = small_net(backend, base_lr=r0, gamma=gamma, power=power)
    for _ in range(5):
        net.train(1, images, labels)
    assert net.iteration == 5
    assert np.isclose(net.learning_rate, r0 * (1 + gamma * 5) ** (-power))

    net.train(3, images, labels)
    assert net.iteration == 8
    assert np.isclose(net.learning_rate, r0 * (1 + gamma * 8) ** (-power))


def test_batches_cycle_through_training_set(backend, toy_set):
    images, labels = toy_set
    images, labels = images[:16], labels[:16]
    net = small_net(backend, batch_size=8)
    net.train(3, images, labels)
    # iterations 0, 1, 2 used batches 0, 1, 0
    expected = images[:8].astype(np.float32).reshape(8, 1, 2, 2) / 255.0
    assert np.allclose(net.data.output, expected)
    assert np.array_equal(net.data.labels, labels[:8].astype(np.float32))


def test_training_reduces_loss(backend, toy_set):
    images, labels = toy_set
    net = small_net(backend, base_lr=0.5, lr_policy="fixed")
    before = batch_loss(net, images, labels)
    net.train(300, images, labels)
    after = batch_loss(net, images, labels)
    assert after < before
    assert net.test(images, labels) < 0.5


def test_training_set_smaller_than_batch(backend, toy_set):
    images, labels = toy_set
    net = small_net(backend, batch_size=8)
    with pytest.raises(DatasetError):
        net.train(1, images[:5], labels[:5])


def test_labels_out_of_range(backend, toy_set):
    images, labels = toy_set
    net = small_net(backend)
    bad = labels.copy()
    bad[3] = 2
    with pytest.raises(DatasetError):
        net.train(1, images, bad)


def test_predict_and_test(backend, toy_set):
    images, labels = toy_set
    net = small_net(backend)
    pred = net.predict(images[0])
    assert pred in (0, 1)

    rate = net.test(images, labels, num_samples=10, seed=3)
    assert 0.0 <= rate <= 1.0
    assert net.state is NetworkState.INFERENCE
    assert net.last_confusion.sum() == 10
    assert np.isclose(rate, 1 - np.trace(net.last_confusion) / 10)


def test_predict_matches_batch_forward(backend, toy_set):
    images, labels = toy_set
    net = small_net(backend)
    net.data.load_batch(images[:8], labels[:8])
    net.forward_propagate()
    batch_preds = net.output_layer.predictions()
    for i in range(8):
        assert net.predict(images[i]) == batch_preds[i]


def test_destroy_releases_everything(backend):
    with lenet(batch_size=2, backend=backend, verbose=0) as net:
        assert backend.live_descriptors > 0
        assert backend.allocated_bytes() > 0
    assert net.state is NetworkState.DESTROYED
    assert backend.live_descriptors == 0
    assert backend.allocated_bytes() == 0
    assert backend.owners() == []


def test_run_logger_history(backend, toy_set, tmp_path):
    images, labels = toy_set
    net = small_net(backend, log_interval=2, runs_root=str(tmp_path), tag="toy")
    net.train(4, images, labels)
    history = net.logger.history()
    assert history["iteration"] == [2, 4]
    assert len(history["loss"]) == 2
    assert (net.logger.dir / "history.csv").is_file()
    assert (net.logger.dir / "history.json").is_file()
    assert (net.logger.dir / "plots" / "loss_curve_toy.png").is_file()


def test_failed_add_leaves_topology_untouched(backend):
    def build(with_failed_add):
        net = Network(batch_size=2, backend=backend, verbose=0, seed=0)
        net.add(DataSource("data", 1, 1, 4))
        fc = net.add(FullyConnected("fc", 3))
        if with_failed_add:
            live = backend.live_descriptors
            with pytest.raises(ValueError):
                net.add(Activation("act", "softplus"))
            assert len(net) == 2
            assert net[fc].next_layers == []
            assert backend.live_descriptors == live
            assert "act" not in backend.owners()
        act = net.add(Activation("act", "tanh"))
        net.add(Output("out"))
        net.assemble()
        assert net[fc].next_layers == [act]
        return net, fc

    images = np.arange(8, dtype=np.uint8).reshape(2, 1, 1, 4) * 30
    grads = []
    for with_failed_add in (True, False):
        net, fc = build(with_failed_add)
        net.data.load_batch(images, [0, 2])
        net.forward_propagate()
        net.back_propagate()
        grads.append(net[fc].grad_b.copy())
        net.destroy()
    assert np.allclose(grads[0], grads[1])


def test_integer_pixels_of_any_dtype_are_scaled(backend):
    net = Network(batch_size=1, backend=backend, verbose=0)
    net.add(DataSource("data", 1, 2, 2))
    net.add(Output("out"))
    net.assemble()
    net.data.load_batch(np.array([[255, 0], [51, 102]]), [0])
    assert net.data.output.max() == 1.0
    assert np.allclose(net.data.output.ravel(), [1.0, 0.0, 0.2, 0.4])


def test_label_count_must_match_images(backend, toy_set):
    images, labels = toy_set
    net = small_net(backend)
    with pytest.raises(DatasetError):
        net.train(1, images, labels[:-3])
    with pytest.raises(DatasetError):
        net.test(images[:10], labels[:9])
