#!/usr/bin/env python3
"""
MIT License

Copyright (c) 2025 Cecilia Martin

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE.

Couchbase XDCR Utilities - display and export of parsed CLI records

The list subcommands of couchbase-cli print loosely formatted text; cbbase
parses it into lists of dicts. These helpers render those records as an
aligned table or as CSV through pandas so both outputs share one column set.

Design principles:
- Pure functions for data transformation (no I/O side effects)
- Dependency injection for I/O operations (testable with StringIO)

Usage:
    from cbutils import display_table, export_csv

    display_table(manager.list_replications(), title="Replications")

    with open('xdcr.csv', 'w') as f:
        export_csv(records, f)
"""

import sys
from typing import List, Dict, Any, Optional, TextIO
import pandas as pd


def to_dataframe(
    records: List[Dict[str, Any]], columns: Optional[List[str]] = None
) -> pd.DataFrame:
    """
    Convert parsed records to a pandas DataFrame.

    Records parsed from CLI text do not all carry the same keys (a stream
    without a filter has no `filter` line); missing values become empty
    strings rather than NaN.

    Args:
        records: List of dictionaries
        columns: Optional list of columns to keep, in this order. Unknown
            columns are skipped.

    Returns:
        pandas DataFrame
    """
    if not records:
        return pd.DataFrame()

    df = pd.DataFrame(records).fillna("")

    if columns:
        df = df[[col for col in columns if col in df.columns]]

    return df


def display_table(
    records: List[Dict[str, Any]],
    columns: Optional[List[str]] = None,
    output: TextIO = None,
    title: Optional[str] = None,
) -> None:
    """
    Write records as a left-aligned text table.

    Args:
        records: List of dictionaries to display
        columns: Optional list of columns to display (default: all)
        output: Output stream (default: sys.stdout)
        title: Optional heading written above the table
    """
    if output is None:
        output = sys.stdout

    if title:
        output.write(f"{title}\n")
        output.write("=" * len(title) + "\n")

    if not records:
        output.write("No records to display.\n")
        return

    df = to_dataframe(records, columns=columns).astype(str)

    widths = {
        col: max(len(str(col)), int(df[col].str.len().max())) for col in df.columns
    }

    output.write(" ".join(f"{col:<{widths[col]}}" for col in df.columns).rstrip())
    output.write("\n")
    for _, row in df.iterrows():
        output.write(
            " ".join(f"{row[col]:<{widths[col]}}" for col in df.columns).rstrip()
        )
        output.write("\n")


def export_csv(
    records: List[Dict[str, Any]],
    file_handle: TextIO,
    columns: Optional[List[str]] = None,
) -> None:
    """
    Export records as CSV via an open text file handle.

    pandas handles quoting, so target paths or filter expressions
    containing commas survive the round trip.
    """
    if not records:
        return

    to_dataframe(records, columns=columns).to_csv(file_handle, index=False)
