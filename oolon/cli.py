"""
Command line entry points.

    oolon train --data ./mnist --iterations 10000 --checkpoint lenet
    oolon test  --data ./mnist --checkpoint lenet --samples 1000

Fatal conditions exit with a distinct code per failure class
(see oolon.errors): 2 no GPU, 3 invalid GPU id, 4 dataset, 5 checkpoint.
"""
import argparse
import sys

from .errors import OolonError
from .helpers.dataset import load_mnist
from .LeNet import lenet


def build_parser():
    parser = argparse.ArgumentParser(prog="oolon", description="Train and test a LeNet classifier on MNIST.")
    sub = parser.add_subparsers(dest="command", required=True)

    def common(p):
        p.add_argument("--data", type=str, default="data", help="directory holding the IDX files")
        p.add_argument("--checkpoint", type=str, default="lenet", help="checkpoint name")
        p.add_argument("--checkpoint-root", type=str, default="checkpoints")
        p.add_argument("--gpu", type=int, default=0, help="CUDA device id")
        p.add_argument("--cpu", action="store_true", help="run on the host reference backend")
        p.add_argument("--seed", type=int, default=None)

    train = sub.add_parser("train", help="train for a number of iterations, then save")
    common(train)
    train.add_argument("--iterations", type=int, default=10000)
    train.add_argument("--batch-size", type=int, default=64)
    train.add_argument("--lr", type=float, default=0.01)
    train.add_argument("--lr-policy", type=str, default="inv", choices=["inv", "fixed", "step", "exp"])
    train.add_argument("--gamma", type=float, default=1e-4)
    train.add_argument("--power", type=float, default=0.75)
    train.add_argument("--step-size", type=int, default=1000)
    train.add_argument("--log-interval", type=int, default=100)
    train.add_argument("--runs-root", type=str, default="runs")
    train.add_argument("--fresh", action="store_true", help="ignore an existing checkpoint")

    test = sub.add_parser("test", help="report the classification error rate")
    common(test)
    test.add_argument("--samples", type=int, default=None, help="test on a random subset")
    return parser


def run_train(args):
    images, labels = load_mnist(args.data, "train")
    _, height, width = images.shape
    net = lenet(
        batch_size=args.batch_size, height=height, width=width,
        use_gpu=not args.cpu, device_id=args.gpu, base_lr=args.lr, lr_policy=args.lr_policy,
        gamma=args.gamma, power=args.power, step_size=args.step_size, seed=args.seed,
        log_interval=args.log_interval, runs_root=args.runs_root, tag=args.checkpoint,
    )
    with net:
        if not args.fresh and not net.load(args.checkpoint, args.checkpoint_root):
            print("Starting from randomly initialized parameters")
        net.train(args.iterations, images, labels)
        net.save(args.checkpoint, args.checkpoint_root)
    return 0


def run_test(args):
    images, labels = load_mnist(args.data, "test")
    _, height, width = images.shape
    net = lenet(batch_size=1, height=height, width=width,
                use_gpu=not args.cpu, device_id=args.gpu, seed=args.seed)
    with net:
        if not net.load(args.checkpoint, args.checkpoint_root):
            print("Testing randomly initialized parameters")
        error_rate = net.test(images, labels, num_samples=args.samples, seed=args.seed)
    print(f"Error rate: {error_rate:.4f}")
    return 0


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        if args.command == "train":
            return run_train(args)
        return run_test(args)
    except OolonError as e:
        print(f"[FATAL] {type(e).__name__}: {e}", file=sys.stderr)
        return e.exit_code


if __name__ == "__main__":
    sys.exit(main())
