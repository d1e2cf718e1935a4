"""
Tests for schema validation, dtype coercion and snapshot loading.
"""

import logging

import pandas as pd
import psycopg2
import pytest

from traveltide_perks.data_loader import (
    REQUIRED_COLUMNS, SchemaValidationError, load_raw_tables, load_raw_tables_from_csv,
    prepare_raw_tables, run_query, validate_schema
)


class TestSchemaValidation:

    def test_valid_snapshot_passes(self, raw_tables):
        validate_schema(raw_tables)

    def test_missing_table(self, raw_tables):
        del raw_tables['hotels']
        with pytest.raises(SchemaValidationError, match="missing table 'hotels'"):
            validate_schema(raw_tables)

    def test_reports_every_missing_column(self, raw_tables):
        raw_tables['flights'] = raw_tables['flights'].drop(columns=['seats', 'base_fare_usd'])
        raw_tables['users'] = raw_tables['users'].drop(columns=['birthdate'])
        with pytest.raises(SchemaValidationError) as excinfo:
            validate_schema(raw_tables)
        message = str(excinfo.value)
        for column in ['seats', 'base_fare_usd', 'birthdate']:
            assert column in message

    def test_extra_columns_allowed(self, raw_tables):
        raw_tables['sessions']['device'] = 'mobile'
        validate_schema(raw_tables)

    def test_required_columns_cover_all_tables(self):
        assert set(REQUIRED_COLUMNS) == {'users', 'sessions', 'flights', 'hotels'}


class TestPrepare:

    def test_text_booleans_and_dates(self, raw_tables):
        sessions = raw_tables['sessions'].copy()
        sessions['flight_booked'] = sessions['flight_booked'].map({True: 'true', False: 'false'})
        sessions['cancellation'] = sessions['cancellation'].astype(object)
        sessions.loc[0, 'cancellation'] = None
        raw_tables['sessions'] = sessions

        prepared = prepare_raw_tables(raw_tables)
        assert prepared['sessions'].loc[0, 'flight_booked'] == True  # noqa: E712
        assert pd.isna(prepared['sessions'].loc[0, 'cancellation'])
        assert pd.api.types.is_datetime64_any_dtype(prepared['users']['birthdate'])
        assert pd.api.types.is_datetime64_any_dtype(prepared['hotels']['check_in_time'])

    def test_raw_tables_untouched(self, raw_tables):
        prepare_raw_tables(raw_tables)
        assert not pd.api.types.is_datetime64_any_dtype(raw_tables['users']['birthdate'])


class TestCsvSnapshot:

    def test_round_trip_through_directory(self, raw_tables, tmp_path):
        for name, df in raw_tables.items():
            df.to_csv(tmp_path / f'{name}.csv', index=False)
        tables = load_raw_tables_from_csv(tmp_path)
        assert set(tables) == {'users', 'sessions', 'flights', 'hotels'}
        assert len(tables['sessions']) == len(raw_tables['sessions'])
        validate_schema(tables)


class FakeConnection:
    """Stands in for a psycopg2 connection; only identity matters to read_sql_query."""


@pytest.fixture
def fake_read_sql(monkeypatch, raw_tables):
    """Serve SELECT * FROM <table> from the snapshot instead of a database."""
    queries = []

    def read_sql_query(query, connection):
        queries.append((query, connection))
        return raw_tables[query.split()[-1]].copy()

    monkeypatch.setattr(pd, 'read_sql_query', read_sql_query)
    return queries


class TestDatabaseLoading:

    def test_run_query_uses_given_connection(self, fake_read_sql, raw_tables, caplog):
        conn = FakeConnection()
        with caplog.at_level(logging.INFO):
            result = run_query("SELECT * FROM users", "Users", conn)
        assert len(result) == len(raw_tables['users'])
        assert fake_read_sql == [("SELECT * FROM users", conn)]
        assert f"Loaded {len(raw_tables['users'])} rows" in caplog.text

    def test_load_raw_tables(self, fake_read_sql, raw_tables):
        tables = load_raw_tables(FakeConnection())
        assert set(tables) == {'users', 'sessions', 'flights', 'hotels'}
        assert [query for query, _ in fake_read_sql] == [
            f"SELECT * FROM {table}" for table in ('users', 'sessions', 'flights', 'hotels')
        ]
        assert len(tables['sessions']) == len(raw_tables['sessions'])
        validate_schema(tables)

    def test_database_error_logged_once_and_reraised(self, monkeypatch, caplog):
        def read_sql_query(query, connection):
            raise psycopg2.OperationalError("connection refused")

        monkeypatch.setattr(pd, 'read_sql_query', read_sql_query)
        with pytest.raises(psycopg2.OperationalError):
            load_raw_tables(FakeConnection())
        errors = [record for record in caplog.records if record.levelno == logging.ERROR]
        assert len(errors) == 1
        assert 'run_query' in errors[0].getMessage()
