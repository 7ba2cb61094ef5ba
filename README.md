# hlsattn

A fixed-point model of the attention blocks of a small transformer,
meant for checking a hardware (HLS) design against a floating-point
reference. Every intermediate value is quantised to the same
`ap_fixed`-style formats the hardware datapath uses, so the model's
output predicts what the synthesised design computes.

## What is in it

- `hlsattn.npyio` reads and writes NumPy files:
  - `npy_load(path)` returns an `NpyArray`; `NpyArray.as_array()` gives
    the data as a NumPy array of the stored shape.
  - `npy_save(path, data, mode)` writes an `.npy` file; with mode `"a"`
    it extends an existing file along its first axis.
  - `npz_load(path, varname)` reads every entry of an `.npz` archive as
    a dict, or only `varname` (a `KeyError` if it is missing). Stored
    and deflated entries are both read.
  - `npz_save(zip_path, name, data, mode)` stores an array uncompressed;
    mode `"a"` adds it to an existing archive.
  - `create_npy_header`, `parse_npy_header`, `read_npy_header` and
    `parse_zip_footer` are the lower-level pieces. Malformed input
    raises `NpyFormatError`.
- `hlsattn.fixed` holds `FixedType`, a signed fixed-point format with a
  total width and an integer width. `quantize` truncates toward negative
  infinity and wraps on overflow. The module also defines the formats
  of the datapath (`DATA_T`, `WEIGHT_T`, `SCORE_T`, `PROB_T`,
  `LN_PARAM_T`, `ACC_T`, `EXP_T`) and the model sizes (`N_MAX = 12`,
  `E_DIM = 16`, `N_HEADS = 4`, `N_FFN_LAYERS = 3`).
- `hlsattn.layers` holds the building blocks: `linear`, `layernorm`,
  the look-up-table `exp_lut` and `exp_fixed`, `softmax_row`,
  `reshape_and_append_bias_kv`, `compute_scores`,
  `softmax_and_context`, `concat_and_project`, `skip_and_norm` and
  `ffn_block`.
- `hlsattn.blocks` holds the three attention blocks. Each one takes its
  parameters as a `BlockWeights` and returns new embeddings; the inputs
  are not changed.
  - `attn_block_obj(x, padding_mask, weights, wij_bias)` is object
    self-attention. It masks padded keys, adds an optional pairwise
    score bias, and zeroes the padded rows of the output.
  - `attn_block_cand(c, weights)` is category self-attention.
  - `attn_block_cross(x, c, padding_mask, weights)` is cross-attention
    from objects to categories. It has no skip connection around the
    attention.
- `hlsattn.testbench` loads exported weights and test vectors, runs the
  object block and compares the result with a golden output
  (`load_block_weights`, `padding_mask_from_input`, `compare_outputs`
  returning a `Comparison`, and `main`).

## Installing

```
pip install .
```

## Using the blocks

```python
from hlsattn.blocks import attn_block_obj
from hlsattn.npyio import npy_load
from hlsattn.testbench import load_block_weights, padding_mask_from_input

weights = load_block_weights("export/", "obj_blocks.0")
x = npy_load("export/test_vec_obj_block_0_in.npy").as_array()
mask = padding_mask_from_input(x)
out = attn_block_obj(x, mask, weights, None)
```

## Running the testbench

The testbench reads a directory of exported `.npy` files with these
names:

- `<block>.attn.Wq.npy` and `<block>.attn.bq.npy`, and likewise for
  `Wk`, `bk`, `Wv`, `bv`, `Wo`, `bo`, `bias_k` and `bias_v`
- `<block>.post_attn_norm.weight.npy` and `<block>.post_attn_norm.bias.npy`
- `<block>.ffwd.<n>.weight.npy` and `<block>.ffwd.<n>.bias.npy`, where
  `n` is `0`, `3` and `6` for the linear layers and `1`, `4` and `7`
  for their layer norms
- `<block>.post_ffwd_norm.weight.npy` and `<block>.post_ffwd_norm.bias.npy`
- the input and golden test vectors

```
hlsattn-testbench DIRECTORY [--block obj_blocks.0]
                  [--input test_vec_obj_block_0_in.npy]
                  [--golden test_vec_obj_block_0_out.npy]
                  [--wij FILE] [--tolerance 0.1]
```

A row of the input is treated as padding when its first feature is
exactly zero. `--wij` names an optional pairwise score bias file of
shape `(48, 13)`. The command prints the largest absolute error, the
RMSE and the number of values compared, leaving the padded rows out.
It exits with status 0 when the largest error is below the tolerance,
and with status 1 otherwise.

## What it does not do

- The testbench command runs only the object block.
  `attn_block_cand` and `attn_block_cross` can be used only from Python.
- `npz_save` writes uncompressed archives only.
- The package models the arithmetic of the design. It does not
  synthesise or simulate hardware.

## Running the tests

```
pip install .[test]
pytest
```