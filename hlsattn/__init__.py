"""Fixed-point model of transformer attention blocks for HLS verification, with .npy/.npz I/O."""

__version__ = "0.1.0"
__all__ = ["npyio", "fixed", "layers", "blocks", "testbench"]