"""silvergt: marker-guided fusion of instance segmentations into silver ground truth"""

__version__ = '0.1.0'
