"""Tests for slot configuration and frame/meter conversion."""
import pytest

from runplanner.errors import ValidationError
from runplanner.geometry import (
    derive_slot_config,
    dieline_problems,
    frames_for_quantity,
    is_degenerate,
    meters_for_frames,
    validate_dieline,
)
from runplanner.models import DielineGeometry


class TestDeriveSlotConfig:

    def test_six_by_four(self, dieline):
        config = derive_slot_config(dieline)
        assert config.labels_per_frame == 24
        assert config.labels_per_slot_per_frame == 4
        assert config.total_slots == 6
        assert config.frame_pitch_mm == pytest.approx(53.0)

    def test_recomputed_from_changed_dieline(self, dieline):
        wider = dieline.model_copy(update={"columns_across": 8})
        assert derive_slot_config(wider).labels_per_frame == 32

    def test_zero_columns_is_degenerate_not_an_error(self, dieline):
        config = derive_slot_config(dieline.model_copy(update={"columns_across": 0}))
        assert config.labels_per_frame == 0
        assert is_degenerate(config)


class TestConversions:

    def test_frames_for_exact_multiple(self, slot_config):
        assert frames_for_quantity(100, slot_config) == 25

    def test_frames_round_up(self, slot_config):
        assert frames_for_quantity(101, slot_config) == 26

    def test_meters_in_millimetre_pitch(self, slot_config):
        assert meters_for_frames(25, slot_config) == pytest.approx(25 * 53 / 1000)
        assert meters_for_frames(0, slot_config) == 0


class TestValidateDieline:

    def test_valid_dieline_passes(self, dieline):
        validate_dieline(dieline)
        assert dieline_problems(dieline) == []

    def test_non_positive_dimensions_rejected(self):
        bad = DielineGeometry(
            roll_width=0,
            label_width=-5,
            label_height=40,
            columns_across=0,
            rows_around=3,
        )
        problems = dieline_problems(bad)
        assert "dieline.roll_width must be positive" in problems
        assert "dieline.label_width must be positive" in problems
        assert "dieline.columns_across must be at least 1" in problems
        with pytest.raises(ValidationError) as info:
            validate_dieline(bad)
        assert info.value.status_code == 422
        assert info.value.details["errors"] == problems
