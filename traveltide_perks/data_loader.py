import os
import psycopg2
import pandas as pd
from typing import Dict
from traveltide_perks.config import db_params
from traveltide_perks.utils import safe_db_decorator, setup_logging

# Setup logging
logger = setup_logging(__name__)

TABLES = ('users', 'sessions', 'flights', 'hotels')

# Minimum columns each raw table must carry
REQUIRED_COLUMNS = {
    'users': [
        'user_id', 'birthdate', 'gender', 'married', 'has_children',
        'home_country', 'home_city', 'home_airport',
        'home_airport_lat', 'home_airport_lon', 'sign_up_date'
    ],
    'sessions': [
        'session_id', 'user_id', 'trip_id', 'session_start', 'session_end',
        'flight_discount', 'hotel_discount', 'flight_discount_amount',
        'hotel_discount_amount', 'flight_booked', 'hotel_booked',
        'page_clicks', 'cancellation'
    ],
    'flights': [
        'trip_id', 'origin_airport', 'destination', 'destination_airport',
        'seats', 'return_flight_booked', 'departure_time', 'return_time',
        'checked_bags', 'trip_airline', 'destination_airport_lat',
        'destination_airport_lon', 'base_fare_usd'
    ],
    'hotels': [
        'trip_id', 'hotel_name', 'nights', 'rooms', 'check_in_time',
        'check_out_time', 'hotel_per_room_usd'
    ]
}

DATETIME_COLUMNS = {
    'users': ['birthdate', 'sign_up_date'],
    'sessions': ['session_start', 'session_end'],
    'flights': ['departure_time', 'return_time'],
    'hotels': ['check_in_time', 'check_out_time']
}

BOOLEAN_COLUMNS = {
    'users': ['married', 'has_children'],
    'sessions': ['flight_discount', 'hotel_discount', 'flight_booked', 'hotel_booked', 'cancellation'],
    'flights': ['return_flight_booked'],
    'hotels': []
}


class SchemaValidationError(ValueError):
    """Raised when a raw table is missing required columns."""
    pass


class DatabaseConnection:
    def __init__(self, params=None):
        self.params = params or db_params
        self.conn = None

    def __enter__(self):
        self.conn = psycopg2.connect(**self.params)
        return self.conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.conn:
            self.conn.close()


@safe_db_decorator
def run_query(query, description="", connection=None):
    """Execute query and return results as a pandas DataFrame"""
    if description:
        logger.info(f"=== {description} ===")
    if connection:
        result = pd.read_sql_query(query, connection)
    else:
        with DatabaseConnection() as conn:
            result = pd.read_sql_query(query, conn)
    if description:
        logger.info(f"Loaded {len(result)} rows")
    return result


def load_raw_tables(connection) -> Dict[str, pd.DataFrame]:
    """Read the four raw tables from the TravelTide database."""
    logger.info("Loading raw tables from database...")
    return {
        table: run_query(f"SELECT * FROM {table}", table.title(), connection)
        for table in TABLES
    }


def load_raw_tables_from_csv(data_dir) -> Dict[str, pd.DataFrame]:
    """Read a snapshot of the four raw tables from <data_dir>/<table>.csv."""
    logger.info(f"Loading raw tables from {data_dir}...")
    tables = {}
    for table in TABLES:
        path = os.path.join(data_dir, f'{table}.csv')
        tables[table] = pd.read_csv(path)
        logger.info(f"{table}: {len(tables[table])} rows")
    return tables


def validate_schema(tables: Dict[str, pd.DataFrame]) -> None:
    """
    Check every raw table for its required columns.

    Raises:
        SchemaValidationError: listing all missing tables and columns at once
    """
    problems = []
    for table, columns in REQUIRED_COLUMNS.items():
        if table not in tables:
            problems.append(f"missing table '{table}'")
            continue
        missing = [col for col in columns if col not in tables[table].columns]
        if missing:
            problems.append(f"{table}: missing columns {missing}")

    if problems:
        for problem in problems:
            logger.error(f"Schema error - {problem}")
        raise SchemaValidationError("; ".join(problems))


def _to_bool(series: pd.Series) -> pd.Series:
    """Coerce booleans stored as bool, 0/1 or 'true'/'false' text; nulls stay null."""
    if series.dtype == bool:
        return series
    mapped = series.map(
        lambda v: v if isinstance(v, bool) or pd.isna(v)
        else str(v).strip().lower() in ('true', 't', '1', '1.0', 'yes')
    )
    return mapped.astype('boolean')


def prepare_raw_tables(tables: Dict[str, pd.DataFrame]) -> Dict[str, pd.DataFrame]:
    """Return copies of the raw tables with datetime and boolean columns coerced."""
    prepared = {}
    for table in TABLES:
        df = tables[table].copy()
        for col in DATETIME_COLUMNS[table]:
            if col in df.columns:
                df[col] = pd.to_datetime(df[col])
        for col in BOOLEAN_COLUMNS[table]:
            if col in df.columns:
                df[col] = _to_bool(df[col])
        prepared[table] = df
    return prepared
