"""
Shared fixtures for run planning and imposition tests.
"""
import pytest

from runplanner.geometry import derive_slot_config
from runplanner.models import DielineGeometry, Item, OptimizationWeights


def make_items(*quantities, prefix="item"):
    """Items with ids item-1, item-2, ... and the given quantities."""
    return [
        Item(
            id=f"{prefix}-{idx}",
            required_quantity=qty,
            print_asset_ref=f"artwork/{prefix}-{idx}.pdf",
            name=f"Label {idx}",
        )
        for idx, qty in enumerate(quantities, start=1)
    ]


@pytest.fixture
def dieline():
    """6 across, 4 around: 24 labels per frame, 4 per slot per frame."""
    return DielineGeometry(
        roll_width=330.0,
        label_width=50.0,
        label_height=50.0,
        columns_across=6,
        rows_around=4,
        h_gap=3.0,
        v_gap=3.0,
        corner_radius=2.0,
    )


@pytest.fixture
def slot_config(dieline):
    return derive_slot_config(dieline)


@pytest.fixture
def weights():
    return OptimizationWeights(material=0.4, print=0.35, labor=0.25)
