from .Network import Network
from .layers import (
    DataSource,
    Convolution,
    MaxPool,
    FullyConnected,
    Activation,
    Output,
)


def lenet(batch_size=64, num_classes=10, channels=1, height=28, width=28, **kwargs):
    """
    LeNet style classifier, assembled and ready to train.

        data    (batch, 1, 28, 28)
        conv1   (batch, 20, 24, 24)
        pool1   (batch, 20, 12, 12)
        conv2   (batch, 50, 8, 8)
        pool2   (batch, 50, 4, 4)
        ip1     (batch, 500)
        relu1   (batch, 500)
        ip2     (batch, num_classes)
        softmax (batch, num_classes)
    """
    net = Network(batch_size=batch_size, **kwargs)
    net.add(DataSource("data", channels, height, width))
    net.add(Convolution("conv1", 20, kernel_size=5))
    net.add(MaxPool("pool1", kernel_size=2, stride=2))
    net.add(Convolution("conv2", 50, kernel_size=5))
    net.add(MaxPool("pool2", kernel_size=2, stride=2))
    net.add(FullyConnected("ip1", 500))
    net.add(Activation("relu1", "relu"))
    net.add(FullyConnected("ip2", num_classes))
    net.add(Output("softmax"))
    return net.assemble()
