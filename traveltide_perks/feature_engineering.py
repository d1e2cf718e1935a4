import numpy as np
import pandas as pd
from sklearn.preprocessing import MinMaxScaler
from typing import List
from traveltide_perks.config import PIPELINE_CONFIG
from traveltide_perks.utils import setup_logging, timer_decorator, haversine_distance, round_half_up

# Setup logging
logger = setup_logging(__name__)

USER_COLUMNS = [
    'user_id', 'birthdate', 'gender', 'married', 'has_children',
    'home_country', 'home_city', 'home_airport', 'home_airport_lat', 'home_airport_lon'
]

FLIGHT_COLUMNS = [
    'trip_id', 'origin_airport', 'destination', 'destination_airport', 'seats',
    'return_flight_booked', 'departure_time', 'return_time', 'checked_bags',
    'trip_airline', 'destination_airport_lat', 'destination_airport_lon', 'base_fare_usd'
]

HOTEL_COLUMNS = [
    'trip_id', 'hotel_name', 'nights', 'rooms', 'check_in_time',
    'check_out_time', 'hotel_price_per_room_night_usd'
]

USER_METRIC_COLUMNS = [
    'user_id', 'num_clicks', 'num_sessions', 'num_rooms', 'num_nights',
    'avg_session_duration_mins', 'total_flight_bookings', 'total_hotel_bookings',
    'avg_flight_discount_percent', 'avg_hotel_discount_percent',
    'average_flight_discount', 'average_hotel_discount', 'total_cancellations',
    'booking_rate', 'cancellation_rate', 'discount_flight_proportion',
    'discount_hotel_proportion', 'ADS', 'ADS_night', 'avg_bags',
    'activity_type', 'scaled_session_duration'
]

TRIP_METRIC_COLUMNS = [
    'user_id', 'num_trips', 'total_checked_bags', 'avg_amount_spent',
    'money_spent_hotel', 'money_spent_flight', 'avg_hotel_price_per_room_night_usd',
    'avg_km_flown', 'scaled_fare_usd'
]


def flag(series: pd.Series) -> pd.Series:
    """Boolean view of a nullable flag column; missing counts as False."""
    return series.astype('boolean').fillna(False).astype(bool)


def safe_ratio(numerator: pd.Series, denominator: pd.Series) -> pd.Series:
    """Element-wise ratio that is NaN wherever the denominator is zero or missing."""
    denominator = denominator.astype(float)
    return numerator.astype(float) / denominator.where(denominator != 0)


def _sum_or_null(series: pd.Series) -> float:
    # SUM semantics: all-null input gives null, not 0
    return series.sum(min_count=1)


@timer_decorator
def select_eligible_users(sessions: pd.DataFrame, cutoff_date=None, min_sessions=None) -> List:
    """Users with more than `min_sessions` sessions starting after `cutoff_date`."""
    if cutoff_date is None:
        cutoff_date = PIPELINE_CONFIG['cutoff_date']
    if min_sessions is None:
        min_sessions = PIPELINE_CONFIG['min_sessions']

    recent = sessions[sessions['session_start'] > pd.Timestamp(cutoff_date)]
    session_counts = recent.groupby('user_id').size()
    eligible = sorted(session_counts[session_counts > min_sessions].index.tolist())

    logger.info(
        f"{len(eligible)} of {sessions['user_id'].nunique()} users have more than "
        f"{min_sessions} sessions after {cutoff_date}"
    )
    return eligible


@timer_decorator
def enrich_sessions(sessions: pd.DataFrame, users: pd.DataFrame, flights: pd.DataFrame,
                    hotels: pd.DataFrame, eligible_users, distance_func=haversine_distance) -> pd.DataFrame:
    """
    Join every session of the eligible users with its user, flight and hotel.

    Sessions are left-joined so that browsing-only sessions and sessions whose
    trip has no flight or hotel record keep their row with null trip fields.

    Args:
        sessions, users, flights, hotels: Raw tables with coerced dtypes
        eligible_users: User ids returned by select_eligible_users
        distance_func: Great-circle distance in kilometers between two (lat, lon) pairs

    Returns:
        DataFrame with one row per eligible session
    """
    cohort_sessions = sessions[sessions['user_id'].isin(eligible_users)]

    # Null trip ids must never match each other in the join
    flights = flights[flights['trip_id'].notna()].drop_duplicates('trip_id')
    hotels = (
        hotels[hotels['trip_id'].notna()]
        .drop_duplicates('trip_id')
        .rename(columns={'hotel_per_room_usd': 'hotel_price_per_room_night_usd'})
    )

    enriched = (
        cohort_sessions
        .merge(users[USER_COLUMNS].drop_duplicates('user_id'), on='user_id', how='left')
        .merge(flights[FLIGHT_COLUMNS], on='trip_id', how='left')
        .merge(hotels[HOTEL_COLUMNS], on='trip_id', how='left')
    )

    enriched['session_duration_mins'] = (
        (enriched['session_end'] - enriched['session_start']).dt.total_seconds() / 60
    )

    # Zero or negative nights are data entry errors and count as a single night
    malformed_nights = enriched['nights'].notna() & (enriched['nights'] <= 0)
    if malformed_nights.any():
        logger.info(f"Clamping {malformed_nights.sum()} hotel stays with nights <= 0 to 1 night")
    enriched['nights'] = enriched['nights'].mask(malformed_nights, 1)

    enriched['distance_km'] = np.asarray(distance_func(
        enriched['home_airport_lat'], enriched['home_airport_lon'],
        enriched['destination_airport_lat'], enriched['destination_airport_lon']
    ), dtype=float)

    enriched = enriched.sort_values(['user_id', 'session_start', 'session_id']).reset_index(drop=True)
    logger.info(f"Enriched {len(enriched)} sessions for {len(eligible_users)} users")
    return enriched


def classify_activity(total_flight_bookings: pd.Series, total_hotel_bookings: pd.Series) -> pd.Series:
    """Label each user by which products they have ever booked."""
    conditions = [
        (total_flight_bookings > 0) & (total_hotel_bookings == 0),
        (total_flight_bookings > 0) & (total_hotel_bookings > 0),
        (total_flight_bookings == 0) & (total_hotel_bookings > 0)
    ]
    choices = ['Flight Only', 'Flight with Hotel', 'Hotel Only']
    return pd.Series(
        np.select(conditions, choices, default='No Activity'),
        index=total_flight_bookings.index
    )


def scale_session_duration(avg_durations: pd.Series) -> pd.Series:
    """
    Min-max scale the per-user average session durations across the population.

    Needs every user's average first. When all users share the same
    average the scaled value is undefined and returned as NaN.
    """
    spread = avg_durations.max() - avg_durations.min()
    if avg_durations.empty or pd.isna(spread) or spread == 0:
        logger.warning("Session durations have no spread; scaled_session_duration is undefined")
        return pd.Series(np.nan, index=avg_durations.index)

    scaler = MinMaxScaler()
    scaled = scaler.fit_transform(avg_durations.to_frame()).ravel()
    return round_half_up(pd.Series(scaled, index=avg_durations.index))


@timer_decorator
def aggregate_user_metrics(enriched: pd.DataFrame) -> pd.DataFrame:
    """Roll enriched sessions up to engagement, discount and booking metrics per user."""
    logger.info("Calculating user metrics...")

    flight_booked = flag(enriched['flight_booked'])
    hotel_booked = flag(enriched['hotel_booked'])
    df = enriched.assign(
        _flight_booked=flight_booked,
        _hotel_booked=hotel_booked,
        _both_booked=flight_booked & hotel_booked,
        _either_booked=flight_booked | hotel_booked,
        _cancelled=flag(enriched['cancellation']),
        _flight_discount=flag(enriched['flight_discount']),
        _hotel_discount=flag(enriched['hotel_discount']),
        _flight_discount_filled=enriched['flight_discount_amount'].fillna(0),
        _hotel_discount_filled=enriched['hotel_discount_amount'].fillna(0),
        _fare_discount=enriched['flight_discount_amount'] * enriched['base_fare_usd'],
        _room_discount=(
            enriched['hotel_price_per_room_night_usd'] * enriched['rooms']
            * enriched['hotel_discount_amount']
        )
    )

    metrics = df.groupby('user_id').agg(
        num_clicks=('page_clicks', 'sum'),
        num_sessions=('session_id', 'nunique'),
        num_rooms=('rooms', 'count'),
        num_nights=('nights', 'count'),
        session_rows=('session_id', 'size'),
        raw_avg_duration=('session_duration_mins', 'mean'),
        total_flight_bookings=('_flight_booked', 'sum'),
        total_hotel_bookings=('_hotel_booked', 'sum'),
        avg_flight_discount_percent=('_flight_discount_filled', 'mean'),
        avg_hotel_discount_percent=('_hotel_discount_filled', 'mean'),
        average_flight_discount=('flight_discount_amount', 'mean'),
        average_hotel_discount=('hotel_discount_amount', 'mean'),
        total_cancellations=('_cancelled', 'sum'),
        both_booked=('_both_booked', 'sum'),
        either_booked=('_either_booked', 'sum'),
        flight_discounts=('_flight_discount', 'sum'),
        hotel_discounts=('_hotel_discount', 'sum'),
        fare_discount=('_fare_discount', _sum_or_null),
        room_discount=('_room_discount', _sum_or_null),
        total_distance=('distance_km', _sum_or_null),
        total_nights=('nights', 'sum'),
        checked_bags=('checked_bags', _sum_or_null)
    )

    metrics['avg_session_duration_mins'] = round_half_up(metrics['raw_avg_duration'])
    for col in ['avg_flight_discount_percent', 'avg_hotel_discount_percent',
                'average_flight_discount', 'average_hotel_discount']:
        metrics[col] = round_half_up(metrics[col])

    metrics['booking_rate'] = safe_ratio(metrics['both_booked'], metrics['either_booked'])
    metrics['cancellation_rate'] = safe_ratio(metrics['total_cancellations'], metrics['either_booked'])
    metrics['discount_flight_proportion'] = metrics['flight_discounts'] / metrics['session_rows']
    metrics['discount_hotel_proportion'] = metrics['hotel_discounts'] / metrics['session_rows']
    metrics['ADS'] = safe_ratio(metrics['fare_discount'], metrics['total_distance'])
    metrics['ADS_night'] = safe_ratio(metrics['room_discount'], metrics['total_nights'])
    metrics['avg_bags'] = metrics['checked_bags'] / metrics['session_rows']
    metrics['activity_type'] = classify_activity(
        metrics['total_flight_bookings'], metrics['total_hotel_bookings']
    )

    # Second pass over the materialized per-user averages
    metrics['scaled_session_duration'] = scale_session_duration(metrics['raw_avg_duration'])

    no_bookings = metrics['either_booked'].eq(0).sum()
    if no_bookings:
        logger.info(f"{no_bookings} users never booked; booking and cancellation rates are undefined")

    metrics = metrics.reset_index()[USER_METRIC_COLUMNS]
    logger.info(f"Calculated user metrics for {len(metrics)} users")
    return metrics


@timer_decorator
def aggregate_trip_metrics(enriched: pd.DataFrame, user_metrics: pd.DataFrame) -> pd.DataFrame:
    """
    Roll the sessions that belong to a trip up to spend and distance metrics per user.

    Every user in `user_metrics` gets a row; users without trips get zero
    counts and spend, and a null `avg_amount_spent`.

    Args:
        enriched: Output of enrich_sessions
        user_metrics: Output of aggregate_user_metrics, defines the population

    Returns:
        DataFrame with one row per user
    """
    logger.info("Calculating trip metrics...")
    trips = enriched[enriched['trip_id'].notna()].copy()

    flight_cost = trips['base_fare_usd'] * trips['seats']
    hotel_cost = trips['hotel_price_per_room_night_usd'] * trips['rooms'] * trips['nights']
    # Undefined when either half of the trip is missing
    trips['trip_cost'] = flight_cost + hotel_cost
    trips['hotel_spend'] = hotel_cost * (1 - trips['hotel_discount_amount'].fillna(0))
    trips['flight_spend'] = flight_cost * (1 - trips['flight_discount_amount'].fillna(0))

    metrics = trips.groupby('user_id').agg(
        num_trips=('trip_id', 'count'),
        total_checked_bags=('checked_bags', 'sum'),
        avg_amount_spent=('trip_cost', 'mean'),
        money_spent_hotel=('hotel_spend', 'sum'),
        money_spent_flight=('flight_spend', 'sum'),
        avg_hotel_price_per_room_night_usd=('hotel_price_per_room_night_usd', 'mean'),
        avg_km_flown=('distance_km', 'mean'),
        scaled_fare_usd=('base_fare_usd', 'mean')
    )

    metrics = metrics.reindex(pd.Index(user_metrics['user_id'], name='user_id'))
    metrics['num_trips'] = metrics['num_trips'].fillna(0).astype(int)
    metrics['total_checked_bags'] = metrics['total_checked_bags'].fillna(0)
    for col in ['money_spent_hotel', 'money_spent_flight', 'avg_hotel_price_per_room_night_usd',
                'avg_km_flown', 'scaled_fare_usd']:
        metrics[col] = round_half_up(metrics[col].fillna(0))

    metrics = metrics.reset_index()[TRIP_METRIC_COLUMNS]
    logger.info(f"Calculated trip metrics for {len(metrics)} users ({metrics['num_trips'].sum()} trips)")
    return metrics
