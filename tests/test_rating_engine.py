import math
import sys
from datetime import datetime, timedelta, timezone

sys.path.insert(0, '.')

from rating.engine import Observation, RatingEngine, RatingSettings
from rating.hybrid_score import VolumeMetrics


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_lazy_initialization_uses_defaults():
    engine = RatingEngine()
    assert engine.get_state('BTC') is None
    state = engine.ensure_asset_exists('BTC', T0)
    assert (state.rating, state.rating_deviation, state.volatility) == (1500.0, 350.0, 0.06)
    assert state.games_played == 0


def test_observation_updates_both_sides():
    engine = RatingEngine()
    scores = engine.process_observation('BTC', 'USDT', 0.05, T0, VolumeMetrics(1500.0, 1000.0), 100.0, 105.0)

    assert scores == (1.0, 0.0)
    btc = engine.get_state('BTC')
    usdt = engine.get_state('USDT')
    assert btc.rating > 1500.0
    assert usdt.rating < 1500.0
    assert btc.rating_deviation < 350.0
    assert btc.games_played == usdt.games_played == 1


def test_repeated_draws_between_equal_assets_leave_ratings_unchanged():
    engine = RatingEngine()
    for i in range(20):
        engine.process_observation('ETH', 'BTC', 0.0, T0 + timedelta(hours=i))
    assert abs(engine.get_state('ETH').rating - 1500.0) < 1e-9
    assert abs(engine.get_state('BTC').rating - 1500.0) < 1e-9


def test_interval_ratings_are_normalized_to_initial_mean():
    engine = RatingEngine()
    observations = [
        Observation.from_kline('BTC', 'USDT', 100.0, 110.0, T0, 100.0, 80.0),
        Observation.from_kline('ETH', 'USDT', 100.0, 95.0, T0, 100.0, 10.0),
        Observation.from_kline('SOL', 'USDT', 100.0, 101.0, T0, 100.0, 60.0),
        Observation.from_kline('ETH', 'BTC', 1.0, 0.9, T0, 100.0, 20.0),
    ]
    scores = engine.process_interval(observations, T0)

    assert len(scores) == 4
    ratings = engine.ratings()
    assert set(ratings) == {'BTC', 'ETH', 'SOL', 'USDT'}
    assert abs(sum(ratings.values()) / len(ratings) - 1500.0) < 1e-6
    assert ratings['BTC'] > ratings['ETH']


def test_interval_result_independent_of_observation_order():
    observations = [
        Observation.from_kline('BTC', 'USDT', 100.0, 110.0, T0, 100.0, 80.0),
        Observation.from_kline('ETH', 'USDT', 100.0, 95.0, T0, 100.0, 10.0),
        Observation.from_kline('ETH', 'BTC', 1.0, 0.9, T0, 100.0, 20.0),
    ]
    forward = RatingEngine()
    forward.process_interval(observations, T0)
    backward = RatingEngine()
    backward.process_interval(list(reversed(observations)), T0)

    for symbol, rating in forward.ratings().items():
        assert abs(rating - backward.ratings()[symbol]) < 1e-9


def test_bad_observation_counts_data_quality_and_draws():
    engine = RatingEngine()
    obs = Observation.from_kline('BTC', 'USDT', 0.0, 100.0, T0)
    assert math.isnan(obs.price_change)
    scores = engine.process_interval([obs], T0)
    assert scores == [(0.5, 0.5)]
    assert engine.data_quality_events == 1


def test_ratings_stay_within_bounds_under_streaks():
    engine = RatingEngine(settings=RatingSettings(min_rating=1400.0, max_rating=1600.0))
    for i in range(50):
        engine.process_observation('DOGE', 'USDT', 0.1, T0 + timedelta(hours=i), VolumeMetrics(10.0, 9.0))
    doge = engine.get_state('DOGE')
    usdt = engine.get_state('USDT')
    assert doge.rating <= 1600.0
    assert usdt.rating >= 1400.0
    assert engine.settings.min_rd <= doge.rating_deviation <= engine.settings.max_rd
    assert engine.clamp_events > 0


def test_decay_grows_deviation_up_to_max():
    engine = RatingEngine()
    engine.process_observation('BTC', 'USDT', 0.05, T0)
    before = engine.get_state('BTC').rating_deviation
    engine.apply_decay('BTC')
    after = engine.get_state('BTC').rating_deviation
    assert before < after <= 350.0
    engine.apply_decay('UNKNOWN')


def test_idle_assets_decay_during_interval():
    engine = RatingEngine()
    engine.process_interval([
        Observation.from_kline('BTC', 'USDT', 100.0, 110.0, T0, 100.0, 80.0),
        Observation.from_kline('ETH', 'USDT', 100.0, 95.0, T0, 100.0, 10.0),
    ], T0)
    eth = engine.get_state('ETH')

    engine.process_interval([Observation.from_kline('BTC', 'USDT', 100.0, 101.0, T0 + timedelta(hours=1), 100.0, 60.0)])
    idle = engine.get_state('ETH')
    assert idle.rating_deviation > eth.rating_deviation
    assert idle.games_played == eth.games_played == 1


def test_settings_from_dict_ignores_unknown_keys():
    settings = RatingSettings.from_dict({'tau': 0.3, 'solver_max_iterations': '50', 'unused': 1})
    assert settings.tau == 0.3
    assert settings.solver_max_iterations == 50
