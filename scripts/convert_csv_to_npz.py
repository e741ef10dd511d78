#!/usr/bin/env python3
"""
Convert a numeric CSV dataset to the NPZ layout read by NumberInput.from_npz.

The last ``--expected`` columns of each row are the targets; the final
``--test-fraction`` of the rows becomes the test split.

Usage:
    python scripts/convert_csv_to_npz.py data/xor.csv data/xor.npz --expected 1 --test-fraction 0.25

The script will:
1. Load the CSV file
2. Split it into features/targets and train/test
3. Save it as a compressed .npz file
4. Verify the conversion was successful
"""

import os
import sys
import argparse

import numpy as np

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), '..'))

from neuralgraph.data_input import NumberInput  # noqa: E402


def save_as_npz(data: NumberInput, filepath: str) -> None:
    """
    Save a dataset in the NPZ layout.

    Parameters:
    -----------
    data : NumberInput
        Dataset to save
    filepath : str
        Output path for the .npz file
    """
    print(f"\n💾 Converting to NPZ format: {filepath}")

    np.savez_compressed(
        filepath,
        train_features=data.train_features,
        train_expected=data.train_expected,
        test_features=data.test_features,
        test_expected=data.test_expected
    )

    npz_size = os.path.getsize(filepath) / 1024  # KB
    print(f"✅ Saved successfully (size: {npz_size:.1f} KB)")


def verify_conversion(npz_filepath: str, original: NumberInput) -> bool:
    """
    Verify that the NPZ file reloads to the same dataset.

    Parameters:
    -----------
    npz_filepath : str
        Path to the .npz file
    original : NumberInput
        Dataset that was written

    Returns:
    --------
    bool
        True if verification passes
    """
    print(f"\n🔍 Verifying conversion...")

    reloaded = NumberInput.from_npz(npz_filepath)
    assert np.array_equal(reloaded.train_features, original.train_features), \
        "Training features don't match!"
    assert np.array_equal(reloaded.train_expected, original.train_expected), \
        "Training targets don't match!"
    assert np.array_equal(reloaded.test_features, original.test_features), \
        "Test features don't match!"
    assert np.array_equal(reloaded.test_expected, original.test_expected), \
        "Test targets don't match!"

    print("✅ Verification passed! Data is identical.")
    return True


def main():
    """Main conversion function."""
    parser = argparse.ArgumentParser(description="Convert a numeric CSV dataset to NPZ")
    parser.add_argument('csv_path')
    parser.add_argument('npz_path')
    parser.add_argument('--expected', type=int, default=1, help="number of target columns")
    parser.add_argument('--test-fraction', type=float, default=0.0)
    parser.add_argument('--delimiter', default=',')
    parser.add_argument('--skip-header', action='store_true')
    args = parser.parse_args()

    print("=" * 60)
    print("Dataset Format Converter")
    print("CSV → NPZ format")
    print("=" * 60)

    if not os.path.exists(args.csv_path):
        print(f"❌ Error: CSV file not found: {args.csv_path}")
        sys.exit(1)

    if os.path.exists(args.npz_path):
        response = input(f"\n⚠️  {args.npz_path} already exists. Overwrite? (y/N): ")
        if response.lower() != 'y':
            print("❌ Conversion cancelled.")
            sys.exit(0)

    try:
        print(f"📂 Loading CSV data from: {args.csv_path}")
        data = NumberInput.from_csv(
            args.csv_path,
            expected_columns=args.expected,
            test_fraction=args.test_fraction,
            delimiter=args.delimiter,
            skip_header=args.skip_header
        )
        print(f"✅ Loaded successfully:")
        print(f"   - Training: {data.get_train_size()} rows")
        print(f"   - Test: {data.get_test_size()} rows")
        print(f"   - Features: {data.get_feature_count()}, targets: {data.get_expected_count()}")

        save_as_npz(data, args.npz_path)
        verify_conversion(args.npz_path, data)

        print("\n" + "=" * 60)
        print("✅ CONVERSION COMPLETE!")
        print("=" * 60)

    except Exception as e:
        print(f"\n❌ Error during conversion: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
