#!/usr/bin/env python3
"""
Convert the MNIST IDX files to a single compressed NPZ archive.

The four IDX files (as distributed on the MNIST site, already gunzipped)
are read, the last ``--validation-size`` training images are split off
as a validation set, and everything is written to ``data/mnist.npz``
for the API server.

Usage:
    python scripts/convert_mnist_to_npz.py [--data-dir data] [--validation-size 10000]

The script will:
1. Read the training and test IDX files
2. Split a validation set off the end of the training set
3. Save everything as mnist.npz in the data directory
4. Verify the conversion was successful
"""

import argparse
import os
import sys
from typing import Dict

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from ffnet.mnist_loader import read_idx_images, read_idx_labels  # noqa: E402

IDX_FILES = {
    'train_images': 'train-images-idx3-ubyte',
    'train_labels': 'train-labels-idx1-ubyte',
    'test_images': 't10k-images-idx3-ubyte',
    'test_labels': 't10k-labels-idx1-ubyte',
}


def load_idx_files(data_dir: str, validation_size: int) -> Dict[str, np.ndarray]:
    """
    Read the IDX files and split off a validation set.

    Returns:
        dict: Arrays keyed as in the NPZ archive
    """
    print(f"📂 Loading IDX files from: {data_dir}")

    arrays = {}
    for key, filename in IDX_FILES.items():
        path = os.path.join(data_dir, filename)
        reader = read_idx_images if key.endswith('images') else read_idx_labels
        arrays[key] = reader(path)

    if not 0 <= validation_size < len(arrays['train_labels']):
        raise ValueError(
            f"validation size {validation_size} must be smaller than the "
            f"training set ({len(arrays['train_labels'])})"
        )

    split = len(arrays['train_labels']) - validation_size
    arrays['val_images'] = arrays['train_images'][split:]
    arrays['val_labels'] = arrays['train_labels'][split:]
    arrays['train_images'] = arrays['train_images'][:split]
    arrays['train_labels'] = arrays['train_labels'][:split]

    print("✅ Loaded successfully:")
    print(f"   - Training: {len(arrays['train_labels'])} images")
    print(f"   - Validation: {len(arrays['val_labels'])} images")
    print(f"   - Test: {len(arrays['test_labels'])} images")

    return arrays


def save_as_npz(arrays: Dict[str, np.ndarray], filepath: str) -> None:
    """Save the arrays as a compressed NPZ archive (images as float32)."""
    print(f"\n💾 Writing NPZ archive: {filepath}")

    np.savez_compressed(
        filepath,
        **{
            key: value.astype(np.float32) if key.endswith('images') else value
            for key, value in arrays.items()
        }
    )

    npz_size = os.path.getsize(filepath) / (1024 * 1024)
    print(f"✅ Saved successfully (size: {npz_size:.2f} MB)")


def verify_conversion(npz_filepath: str, arrays: Dict[str, np.ndarray]) -> bool:
    """Check that the archive holds the same data as ``arrays``."""
    print("\n🔍 Verifying conversion...")

    with np.load(npz_filepath) as data:
        for key, original in arrays.items():
            assert np.allclose(data[key], original), f"{key} doesn't match!"

    print("✅ Verification passed! Data is identical.")
    return True


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    parser.add_argument('--data-dir', default=os.path.join(project_root, 'data'))
    parser.add_argument('--validation-size', type=int, default=10000)
    args = parser.parse_args()

    print("=" * 60)
    print("MNIST Data Format Converter")
    print("IDX files → NPZ archive")
    print("=" * 60)

    npz_path = os.path.join(args.data_dir, 'mnist.npz')

    missing = [
        name for name in IDX_FILES.values()
        if not os.path.exists(os.path.join(args.data_dir, name))
    ]
    if missing:
        print(f"❌ Error: IDX files not found in {args.data_dir}: {', '.join(missing)}")
        sys.exit(1)

    if os.path.exists(npz_path):
        response = input(f"\n⚠️  {npz_path} already exists. Overwrite? (y/N): ")
        if response.lower() != 'y':
            print("❌ Conversion cancelled.")
            sys.exit(0)

    try:
        arrays = load_idx_files(args.data_dir, args.validation_size)
        save_as_npz(arrays, npz_path)
        verify_conversion(npz_path, arrays)

        print("\n" + "=" * 60)
        print("✅ CONVERSION COMPLETE!")
        print("=" * 60)
        print(f"\n📁 NPZ file: {npz_path}")

    except Exception as e:
        print(f"\n❌ Error during conversion: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
