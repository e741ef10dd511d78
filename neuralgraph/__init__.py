"""
neuralgraph package
~~~~~~~~~~~~~~~~~~~

Layered neural-network graph engine: nodes and edges, layers, a builder that
materializes feed-forward, recurrent, GRU and LSTM topologies from a
descriptor and a dataset, a training driver, weight persistence, a SQLite
registry and an API server.
"""

from neuralgraph.data_input import DataInput, NumberInput, TEST, TRAIN
from neuralgraph.errors import BuildError, LoadError, NeuralGraphError
from neuralgraph.layer import Layer
from neuralgraph.layer_builder import (
    LayerBuilder,
    TYPE_DFF,
    TYPE_GRU,
    TYPE_LSTM,
    TYPE_RNN,
)
from neuralgraph.network import NNetwork
from neuralgraph.node import Node
from neuralgraph.topology import LayerInfo, NNInfo
from neuralgraph.training_config import LearningRateSchedule, Terminator, TrainingConfig

__version__ = "1.0.0"

__all__ = [
    'BuildError',
    'DataInput',
    'Layer',
    'LayerBuilder',
    'LayerInfo',
    'LearningRateSchedule',
    'LoadError',
    'NNInfo',
    'NNetwork',
    'NeuralGraphError',
    'Node',
    'NumberInput',
    'TEST',
    'TRAIN',
    'Terminator',
    'TrainingConfig',
    'TYPE_DFF',
    'TYPE_GRU',
    'TYPE_LSTM',
    'TYPE_RNN',
]
