"""
Configuration settings for the perk assignment pipeline
"""
import os

# Database connection parameters
db_params = {
    'dbname': os.environ.get('TRAVELTIDE_DB_NAME', 'TravelTide'),
    'user': os.environ.get('TRAVELTIDE_DB_USER', ''),
    'password': os.environ.get('TRAVELTIDE_DB_PASSWORD', ''),
    'host': os.environ.get('TRAVELTIDE_DB_HOST', 'localhost'),
    'port': os.environ.get('TRAVELTIDE_DB_PORT', '5432')
}

# Cohort and indicator thresholds
PIPELINE_CONFIG = {
    'cutoff_date': '2023-01-04',  # only sessions starting after this count towards eligibility
    'min_sessions': 7,            # users need strictly more sessions than this
    'long_flight_km': 1000,
    'high_spend_usd': 1000
}

# Perk scores: weight of each per-session indicator
SCORE_WEIGHTS = {
    'free_hotel_meals': {
        'multiple_rooms': 0.5,
        'has_children': 0.3,
        'senior': 0.2
    },
    'free_checked_bag': {
        'multiple_bags': 0.7,
        'long_flight': 0.3
    },
    'no_cancellation_fee': {
        'cancellation': 0.5,
        'flight_and_hotel': 0.5
    },
    'one_night_free_with_flight': {
        'short_stay': 0.5,
        'flight_and_hotel': 0.5
    },
    'exclusive_discount': {
        'high_spender': 0.5,
        'used_discount': 0.5
    }
}

# Age and trip count boundaries for the traveller profile
PROFILE_THRESHOLDS = {
    'senior_age': 55,          # strictly older is a senior traveller
    'senior_score_age': 56,    # age from which the hotel meals score counts a senior
    'young_age': 35,
    'frequent_trips': 2,
    'business_trips': 5
}

OUTPUT_DIR = os.environ.get('TRAVELTIDE_OUTPUT_DIR', 'output/perks')
