#!/usr/bin/env python3
"""
Product Price Markup

Applies the storefront's tiered markup to scraped product prices. The
scraped price is kept in `original_price`; `price` becomes the marked-up
price. Products are streamed from the input file and written one at a time,
so large catalogs never sit in memory.

Usage:
    python update_prices.py
    python update_prices.py --input products.json --output products_updated_prices.json
"""

import argparse
import json
import math
import os
import sys
import textwrap
from datetime import datetime
from typing import Any, Dict, Optional, Tuple, Union

from catalog_sync import read_json_array
from sync_errors import ParseError


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_INPUT = "products.json"
DEFAULT_OUTPUT = "products_updated_prices.json"

# Prices below this get the smallest markup
FIRST_TIER_LIMIT = 40000
FIRST_TIER_MARKUP = 5000

# (highest price in tier, markup), checked in order
MARKUP_TIERS = [
    (80000, 10000),
    (99000, 15000),
    (150000, 20000),
    (200000, 30000),
    (450000, 40000),
    (700000, 50000),
    (900000, 60000),
    (999000, 80000),
    (1990000, 100000),
    (2000000, 200000),
]

Number = Union[int, float]


# =============================================================================
# Markup
# =============================================================================

def calculate_new_price(original_price: Optional[Number]) -> Optional[Number]:
    """Return the marked-up price.

    Examples:
    - 35000 → 40000
    - 80000 → 90000
    - 2000000 → 2200000
    - 3500000 → 3800000 (100k per extra million, plus 200k)
    """
    if original_price is None:
        return None

    if original_price < FIRST_TIER_LIMIT:
        return original_price + FIRST_TIER_MARKUP

    for limit, markup in MARKUP_TIERS:
        if original_price <= limit:
            return original_price + markup

    additional_millions = math.floor((original_price - 2000000) / 1000000)
    return original_price + 100000 * (additional_millions + 2)


def is_price(value: Any) -> bool:
    # bool is an int subclass; a true/false price is bad data
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def apply_markup(product: Dict[str, Any]) -> bool:
    """Mark up a product in place. Returns False if it has no usable price."""
    original_price = product.get("price")
    if not is_price(original_price):
        return False
    product["original_price"] = original_price
    product["price"] = calculate_new_price(original_price)
    return True


# =============================================================================
# File Processing
# =============================================================================

def update_product_prices(input_file: str = DEFAULT_INPUT,
                          output_file: str = DEFAULT_OUTPUT) -> Tuple[int, int]:
    """
    Stream products from input_file, mark up their prices, write output_file.

    The output is written to a temporary file and moved into place only when
    the whole input has been read, so a malformed input never leaves a
    half-written hand-off file behind.

    Returns (products updated, products total).
    """
    print(f"Reading products from {input_file}...", flush=True)
    tmp_file = f"{output_file}.tmp"
    updated = 0
    total = 0

    try:
        with open(tmp_file, "w", encoding="utf-8") as out:
            out.write("[")
            for index, product in enumerate(read_json_array(input_file), 1):
                total = index
                if isinstance(product, dict) and apply_markup(product):
                    updated += 1
                    print(f"Updated product {index}: {product['original_price']} -> {product['price']}",
                          flush=True)
                else:
                    print(f"Product {index} has no price", flush=True)

                out.write("\n" if index == 1 else ",\n")
                out.write(textwrap.indent(json.dumps(product, indent=4, ensure_ascii=False), " " * 4))
            out.write("\n]\n" if total else "]\n")
    except Exception:
        if os.path.exists(tmp_file):
            os.remove(tmp_file)
        raise

    os.replace(tmp_file, output_file)

    print(f"\nWrote {total} products to {output_file}", flush=True)
    print(f"Successfully updated {updated} of {total} products", flush=True)
    print("Original prices are stored in 'original_price' field", flush=True)
    print("New prices are stored in 'price' field", flush=True)
    return updated, total


# =============================================================================
# Main
# =============================================================================

def main(argv=None) -> int:
    """Main entry point. Returns the process exit code."""
    parser = argparse.ArgumentParser(description='Apply tiered markup to scraped product prices')
    parser.add_argument('--input', default=DEFAULT_INPUT,
                        help=f'Scraped products file (default {DEFAULT_INPUT})')
    parser.add_argument('--output', default=DEFAULT_OUTPUT,
                        help=f'Marked-up products file (default {DEFAULT_OUTPUT})')
    args = parser.parse_args(argv)

    print("=" * 60, flush=True)
    print("Product Price Markup", flush=True)
    print(f"Started at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}", flush=True)
    print("=" * 60, flush=True)

    try:
        update_product_prices(args.input, args.output)
    except (ParseError, OSError) as e:
        print(f"Error updating product prices: {e}", flush=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
