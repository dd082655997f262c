import os

import numpy as np
import pytest

from oolon.cli import build_parser, main
from oolon.helpers.dataset import SPLITS, write_idx


@pytest.fixture
def mnist_dir(tmp_path):
    """A few 28x28 examples per split in IDX layout."""
    rng = np.random.default_rng(0)
    root = tmp_path / "mnist"
    root.mkdir()
    for split, count in (("train", 6), ("test", 4)):
        image_file, label_file = SPLITS[split]
        write_idx(root / image_file, images=rng.integers(0, 256, size=(count, 28, 28)).astype(np.uint8))
        write_idx(root / label_file, labels=rng.integers(0, 10, size=count))
    return root


def test_parser_defaults():
    args = build_parser().parse_args(["train"])
    assert args.iterations == 10000
    assert args.batch_size == 64
    assert args.lr == 0.01
    assert args.lr_policy == "inv"
    assert args.cpu is False


def test_missing_dataset_exit_code(tmp_path, capsys):
    code = main(["train", "--cpu", "--data", str(tmp_path / "nowhere")])
    assert code == 4
    assert "[FATAL] DatasetError" in capsys.readouterr().err


def test_train_then_test(mnist_dir, tmp_path, capsys):
    ckpt_root = tmp_path / "ckpt"
    common = ["--cpu", "--data", str(mnist_dir), "--checkpoint", "tiny",
              "--checkpoint-root", str(ckpt_root), "--seed", "0"]

    code = main(["train", *common, "--iterations", "3", "--batch-size", "2",
                 "--log-interval", "1", "--runs-root", str(tmp_path / "runs")])
    assert code == 0
    folder = ckpt_root / "tiny"
    assert (folder / "learnrate.oolon").is_file()
    assert (folder / "conv1.oolon").is_file()
    assert (folder / "ip2.bias.oolon").is_file()
    assert os.listdir(tmp_path / "runs")

    code = main(["test", *common, "--samples", "3"])
    assert code == 0
    assert "Error rate:" in capsys.readouterr().out


def test_test_without_checkpoint(mnist_dir, tmp_path, capsys):
    code = main(["test", "--cpu", "--data", str(mnist_dir),
                 "--checkpoint-root", str(tmp_path / "empty")])
    assert code == 0
    assert "randomly initialized" in capsys.readouterr().out
