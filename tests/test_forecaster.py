"""Tests for load forecasting and predictive scale-up."""

import datetime

import pytest

from data.metric_store import MetricSample, MetricSeriesStore
from ml.forecaster import (
    PredictiveForecaster,
    calculate_confidence,
    calculate_seasonal_adjustment,
    calculate_trend,
    predict_load,
    trend_label,
)
from scaling.models import ScalingAction

LATE_NIGHT = datetime.datetime(2024, 1, 1, 1, 0).timestamp()
MORNING = datetime.datetime(2024, 1, 1, 9, 0).timestamp()


class TestTrend:
    def test_slope_of_line(self):
        assert calculate_trend([1, 3, 5, 7]) == pytest.approx(2.0)

    def test_constant_series_is_stable(self):
        slope = calculate_trend([50.0] * 20)
        assert trend_label(slope) == "stable"

    def test_labels(self):
        assert trend_label(0.5) == "increasing"
        assert trend_label(-0.5) == "decreasing"


class TestSeasonalAdjustment:
    @pytest.mark.parametrize("hour,expected", [(9, 15), (17, 15), (18, 5), (22, 5), (23, -10), (3, -10)])
    def test_by_hour(self, hour, expected):
        ts = datetime.datetime(2024, 1, 1, hour, 30).timestamp()
        assert calculate_seasonal_adjustment(ts) == expected


class TestConfidence:
    def test_few_values(self):
        assert calculate_confidence([10, 90]) == 0.5

    def test_bounds(self):
        assert calculate_confidence([50] * 10) == 0.95
        assert calculate_confidence([0, 100] * 10) == 0.3


class TestPredictLoad:
    def test_needs_ten_points(self):
        assert predict_load([50] * 9, 60, MORNING) is None

    def test_declining_late_night_load(self):
        values = [60 - i for i in range(20)]
        prediction = predict_load(values, 60, LATE_NIGHT)
        assert prediction.value == 0
        assert prediction.trend == "decreasing"
        assert 0.3 <= prediction.confidence <= 0.95
        assert prediction.horizon_minutes == 60

    def test_uses_last_twenty_values(self):
        values = [0] * 30 + [50] * 20
        prediction = predict_load(values, 60, MORNING)
        assert prediction.trend == "stable"
        assert prediction.value == pytest.approx(65)


def fill(store, service_id, values, start):
    for i, value in enumerate(values):
        store.append(service_id, "cpu", MetricSample(value=value, timestamp=start + i * 30))


class TestPredictiveForecaster:
    def test_rising_load_scales_up_ahead(self, registry, executor, client, clock, make_service):
        clock.now = MORNING
        registry.upsert(make_service())
        store = MetricSeriesStore(clock=clock)
        fill(store, "srv-api", [70 + i * 0.1 for i in range(20)], MORNING - 600)
        forecaster = PredictiveForecaster(registry, store, executor, clock=clock)

        events = forecaster.run_cycle()

        assert len(events) == 1
        assert events[0].action == ScalingAction.PREDICTIVE_SCALE_UP.value
        assert events[0].to_instances == 4
        client.scale_service.assert_called_once_with("srv-api", 4)
        predictions = forecaster.predictions_as_dict()["srv-api"]
        assert set(predictions) == {"next_hour", "next_6_hours", "next_day", "generated_at"}

    def test_declining_load_does_not_scale(self, registry, executor, client, clock, make_service):
        clock.now = LATE_NIGHT
        registry.upsert(make_service())
        store = MetricSeriesStore(clock=clock)
        fill(store, "srv-api", [60 - i for i in range(20)], LATE_NIGHT - 600)
        forecaster = PredictiveForecaster(registry, store, executor, clock=clock)

        assert forecaster.run_cycle() == []
        client.scale_service.assert_not_called()
        assert forecaster.get_predictions("srv-api")["next_hour"].trend == "decreasing"

    def test_not_enough_history(self, registry, executor, clock, make_service):
        registry.upsert(make_service())
        store = MetricSeriesStore(clock=clock)
        fill(store, "srv-api", [90] * 5, clock())
        forecaster = PredictiveForecaster(registry, store, executor, clock=clock)
        assert forecaster.run_cycle() == []
        assert forecaster.get_predictions("srv-api") is None

    def test_respects_cooldown(self, registry, executor, client, clock, make_service):
        clock.now = MORNING
        registry.upsert(make_service(cooldown_until=MORNING + 60))
        store = MetricSeriesStore(clock=clock)
        fill(store, "srv-api", [70 + i * 0.1 for i in range(20)], MORNING - 600)
        forecaster = PredictiveForecaster(registry, store, executor, clock=clock)
        assert forecaster.run_cycle() == []
        client.scale_service.assert_not_called()
