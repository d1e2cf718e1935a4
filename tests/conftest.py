"""
Shared pytest fixtures: a small TravelTide snapshot with hand-computed results.

Users:
  1 - senior (64), one flight+hotel trip to London and nine browsing sessions
  2 - parent (28), a flight-only trip to Boston and a hotel-only trip
  3 - exactly 7 sessions after the cutoff, excluded from the cohort
  4 - 8 browsing sessions, never books
"""

import numpy as np
import pandas as pd
import pytest

from traveltide_perks.data_loader import prepare_raw_tables
from traveltide_perks.feature_engineering import (
    enrich_sessions, aggregate_user_metrics, aggregate_trip_metrics
)

AS_OF = pd.Timestamp('2024-06-01')

JFK = (40.6413, -73.7781)
LHR = (51.4700, -0.4543)
BOS = (42.3656, -71.0096)


def make_session(session_id, user_id, start, minutes=10, trip_id=None, **fields):
    """One raw session row; unspecified flags default to False and amounts to null."""
    start = pd.Timestamp(start)
    row = {
        'session_id': session_id,
        'user_id': user_id,
        'trip_id': trip_id,
        'session_start': start,
        'session_end': start + pd.Timedelta(minutes=minutes),
        'page_clicks': 5,
        'flight_discount': False,
        'hotel_discount': False,
        'flight_discount_amount': np.nan,
        'hotel_discount_amount': np.nan,
        'flight_booked': False,
        'hotel_booked': False,
        'cancellation': False
    }
    row.update(fields)
    return row


def browsing_sessions(user_id, count, first_day='2023-02-01', minutes=10, prefix=None):
    """`count` sessions without a trip on consecutive days."""
    prefix = prefix or f'{user_id}-browse'
    days = pd.date_range(first_day, periods=count, freq='D')
    return [
        make_session(f'{prefix}-{i}', user_id, day + pd.Timedelta(hours=9), minutes=minutes)
        for i, day in enumerate(days)
    ]


def make_user(user_id, birthdate, has_children=False, married=False):
    return {
        'user_id': user_id,
        'birthdate': birthdate,
        'gender': 'F',
        'married': married,
        'has_children': has_children,
        'home_country': 'usa',
        'home_city': 'new york',
        'home_airport': 'JFK',
        'home_airport_lat': JFK[0],
        'home_airport_lon': JFK[1],
        'sign_up_date': '2022-06-01'
    }


def make_flight(trip_id, destination, coords, seats=1, checked_bags=0, base_fare_usd=300.0):
    return {
        'trip_id': trip_id,
        'origin_airport': 'JFK',
        'destination': destination,
        'destination_airport': destination[:3].upper(),
        'seats': seats,
        'return_flight_booked': True,
        'departure_time': '2023-03-01 08:00',
        'return_time': '2023-03-08 08:00',
        'checked_bags': checked_bags,
        'trip_airline': 'Delta Air Lines',
        'destination_airport_lat': coords[0],
        'destination_airport_lon': coords[1],
        'base_fare_usd': base_fare_usd
    }


def make_hotel(trip_id, nights, rooms, price):
    return {
        'trip_id': trip_id,
        'hotel_name': 'Hilton - london',
        'nights': nights,
        'rooms': rooms,
        'check_in_time': '2023-03-01 15:00',
        'check_out_time': '2023-03-02 11:00',
        'hotel_per_room_usd': price
    }


@pytest.fixture
def raw_tables():
    """The four raw tables as they come out of the database."""
    users = pd.DataFrame([
        make_user(1, '1960-03-15'),
        make_user(2, '1995-07-01', has_children=True, married=True),
        make_user(3, '1990-01-01'),
        make_user(4, '1980-05-05')
    ])

    sessions = (
        [make_session('1-trip', 1, '2023-01-20 10:00', minutes=20, trip_id='T1', page_clicks=20,
                      flight_booked=True, hotel_booked=True,
                      flight_discount=True, flight_discount_amount=0.1)]
        + browsing_sessions(1, 9)
        + [make_session('2-flight', 2, '2023-01-20 10:00', minutes=30, trip_id='T2', flight_booked=True),
           make_session('2-hotel', 2, '2023-01-21 10:00', minutes=30, trip_id='T3', hotel_booked=True)]
        + browsing_sessions(2, 8, minutes=30)
        + browsing_sessions(3, 7)
        + browsing_sessions(3, 2, first_day='2022-12-01', prefix='3-old')
        + browsing_sessions(4, 8)
    )
    sessions = pd.DataFrame(sessions)

    flights = pd.DataFrame([
        make_flight('T1', 'london', LHR, seats=1, checked_bags=2, base_fare_usd=500.0),
        make_flight('T2', 'boston', BOS, seats=2, checked_bags=0, base_fare_usd=300.0)
    ])

    hotels = pd.DataFrame([
        make_hotel('T1', nights=0, rooms=2, price=200.0),
        make_hotel('T3', nights=3, rooms=1, price=100.0)
    ])

    return {'users': users, 'sessions': sessions, 'flights': flights, 'hotels': hotels}


@pytest.fixture
def prepared_tables(raw_tables):
    return prepare_raw_tables(raw_tables)


@pytest.fixture
def enriched(prepared_tables):
    return enrich_sessions(
        prepared_tables['sessions'], prepared_tables['users'],
        prepared_tables['flights'], prepared_tables['hotels'],
        eligible_users=[1, 2, 4]
    )


@pytest.fixture
def user_metrics(enriched):
    return aggregate_user_metrics(enriched)


@pytest.fixture
def trip_metrics(enriched, user_metrics):
    return aggregate_trip_metrics(enriched, user_metrics)
