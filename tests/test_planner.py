"""Tests for candidate generation and the planning entry point."""
import time

import pytest

from conftest import make_items
from runplanner.errors import TimeoutError, ValidationError
from runplanner.models import DielineGeometry, OptimizationWeights, PlanRequest
from runplanner.planner import generate_layout_options, generate_reasoning, plan_layouts
from runplanner.svg import EMPTY_SVG


class TestGenerateLayoutOptions:

    def test_ranked_best_first(self, dieline, weights):
        options = generate_layout_options(make_items(1500, 730, 730, 200, 33, 1), dieline, weights)
        scores = [opt.overall_score for opt in options]
        assert scores == sorted(scores, reverse=True)
        assert len({opt.id for opt in options}) == len(options)

    def test_options_carry_strategy_and_time(self, dieline, weights):
        options = generate_layout_options(make_items(1000, 100), dieline, weights)
        for option in options:
            assert option.strategy in {"ganged", "balanced", "individual"}
            assert option.estimated_minutes > 0
            assert option.reasoning.endswith(".")

    def test_material_weight_prefers_least_waste(self, dieline):
        items = make_items(1000, 100)
        options = generate_layout_options(items, dieline, OptimizationWeights(material=1, print=0, labor=0))
        least_waste = min(opt.total_waste_meters for opt in options)
        assert options[0].total_waste_meters == pytest.approx(least_waste)

    def test_default_weights_applied(self, dieline):
        assert generate_layout_options(make_items(100), dieline)[0].overall_score > 0


class TestReasoning:

    def test_mentions_runs_and_rewinding(self, dieline):
        option = generate_layout_options(make_items(100), dieline, qty_per_roll=1000)[0]
        text = generate_reasoning(option.runs, make_items(100), option.material_efficiency_score, "ganged")
        assert text.startswith("Items with similar quantities ganged into shared runs. 1 run printing 100 labels")
        assert "1 run need rewinding" in text


class TestPlanLayouts:

    def test_response_shape(self, dieline):
        response = plan_layouts(PlanRequest(items=make_items(100, 101), dieline=dieline))
        assert response.status == "ok"
        assert response.slot_config.labels_per_frame == 24
        assert response.theoretical_min_frames == 9
        assert response.theoretical_min_meters == pytest.approx(0.477)
        assert response.selected_id == response.options[0].id
        assert response.artifacts.svg.startswith("<svg")
        assert response.artifacts.svg != EMPTY_SVG

    def test_empty_items_rejected(self, dieline):
        with pytest.raises(ValidationError) as info:
            plan_layouts(PlanRequest(items=[], dieline=dieline))
        assert info.value.message == "items must not be empty"

    def test_duplicate_ids_rejected(self, dieline):
        items = make_items(10) + make_items(20)
        with pytest.raises(ValidationError):
            plan_layouts(PlanRequest(items=items, dieline=dieline))

    def test_missing_dieline_rejected(self):
        with pytest.raises(ValidationError) as info:
            plan_layouts(PlanRequest(items=make_items(10)))
        assert info.value.message == "dieline is required"

    def test_invalid_dieline_rejected(self):
        bad = DielineGeometry(roll_width=330, label_width=50, label_height=50, columns_across=0, rows_around=4)
        with pytest.raises(ValidationError) as info:
            plan_layouts(PlanRequest(items=make_items(10), dieline=bad))
        assert info.value.details == {"errors": ["dieline.columns_across must be at least 1"]}

    def test_too_many_items(self, dieline):
        with pytest.raises(ValidationError):
            plan_layouts(PlanRequest(items=make_items(*([1] * 501)), dieline=dieline))

    def test_expired_deadline_raises_timeout(self, dieline):
        request = PlanRequest(items=make_items(100, 101), dieline=dieline)
        with pytest.raises(TimeoutError) as info:
            plan_layouts(request, deadline=time.monotonic() - 1)
        assert info.value.status_code == 408
