import pandas as pd
from typing import Dict
from traveltide_perks.config import PIPELINE_CONFIG, SCORE_WEIGHTS, PROFILE_THRESHOLDS
from traveltide_perks.feature_engineering import flag
from traveltide_perks.utils import setup_logging, timer_decorator, round_half_up

# Setup logging
logger = setup_logging(__name__)

# Priority order matters: earlier perks win the sole-best-rank check first
PERKS = [
    'free_hotel_meals',
    'free_checked_bag',
    'no_cancellation_fee',
    'one_night_free_with_flight',
    'exclusive_discount'
]

PERK_LABELS = {
    'free_hotel_meals': 'Free Hotel Meals',
    'free_checked_bag': 'Free Checked Bag',
    'no_cancellation_fee': 'No Cancellation Fee',
    'one_night_free_with_flight': '1 Night Free With Hotel',
    'exclusive_discount': 'Exclusive Discount'
}

SCORE_COLUMNS = [f'score_{perk}' for perk in PERKS]
RANK_COLUMNS = [f'rank_{perk}' for perk in PERKS]

DEMOGRAPHIC_COLUMNS = [
    'user_id', 'gender', 'birthdate', 'married', 'has_children',
    'home_country', 'home_city', 'home_airport', 'sign_up_date'
]


def calculate_age(birthdate: pd.Series, as_of) -> pd.Series:
    """Age in completed years at `as_of`; NaN where the birthdate is missing."""
    as_of = pd.Timestamp(as_of)
    birthdate = pd.to_datetime(birthdate)
    birthday_pending = (
        (birthdate.dt.month > as_of.month)
        | ((birthdate.dt.month == as_of.month) & (birthdate.dt.day > as_of.day))
    )
    return as_of.year - birthdate.dt.year - birthday_pending.astype(int)


@timer_decorator
def calculate_perk_scores(enriched: pd.DataFrame, trip_metrics: pd.DataFrame, as_of,
                          config: Dict = None, weights: Dict = None) -> pd.DataFrame:
    """
    Calculate the propensity of each user towards each perk.

    Every session row scores a weighted sum of yes/no indicators; the user's
    score is the sum divided by their number of session rows, so users with
    many non-qualifying sessions score lower.

    Args:
        enriched: Output of enrich_sessions
        trip_metrics: Output of aggregate_trip_metrics (for avg_amount_spent)
        as_of: Date at which ages are evaluated
        config: Thresholds, defaults to PIPELINE_CONFIG
        weights: Indicator weights, defaults to SCORE_WEIGHTS

    Returns:
        DataFrame with user_id and one score_<perk> column per perk, rounded to 2 decimals
    """
    config = config or PIPELINE_CONFIG
    weights = weights or SCORE_WEIGHTS

    df = enriched.merge(trip_metrics[['user_id', 'avg_amount_spent']], on='user_id', how='inner')
    age = calculate_age(df['birthdate'], as_of)
    flight_and_hotel = flag(df['flight_booked']) & flag(df['hotel_booked'])

    indicators = {
        'free_hotel_meals': {
            'multiple_rooms': df['rooms'] >= 2,
            'has_children': flag(df['has_children']),
            'senior': age >= PROFILE_THRESHOLDS['senior_score_age']
        },
        'free_checked_bag': {
            'multiple_bags': df['checked_bags'] >= 2,
            'long_flight': df['distance_km'] > config['long_flight_km']
        },
        'no_cancellation_fee': {
            'cancellation': flag(df['cancellation']),
            'flight_and_hotel': flight_and_hotel
        },
        'one_night_free_with_flight': {
            'short_stay': df['nights'] < 2,
            'flight_and_hotel': flight_and_hotel
        },
        'exclusive_discount': {
            'high_spender': df['avg_amount_spent'] > config['high_spend_usd'],
            'used_discount': flag(df['flight_discount']) | flag(df['hotel_discount'])
        }
    }

    session_scores = df[['user_id']].copy()
    for perk in PERKS:
        session_scores[f'score_{perk}'] = sum(
            indicator.astype(float) * weights[perk][name]
            for name, indicator in indicators[perk].items()
        )

    scores = round_half_up(session_scores.groupby('user_id')[SCORE_COLUMNS].mean()).reset_index()
    logger.info(f"Calculated perk scores for {len(scores)} users")
    return scores


@timer_decorator
def rank_perk_scores(scores: pd.DataFrame) -> pd.DataFrame:
    """
    Rank every user against the whole cohort for each perk score.

    Highest score is rank 1. Equal scores share a rank and the next score
    continues after the tied rows (1, 1, 3).
    """
    ranks = scores[['user_id']].copy()
    for perk in PERKS:
        ranks[f'rank_{perk}'] = (
            scores[f'score_{perk}'].rank(method='min', ascending=False).astype(int)
        )
    return ranks


def _sole_best_rank(perk):
    def rule(ranks):
        return all(
            ranks[f'rank_{perk}'] < ranks[f'rank_{other}']
            for other in PERKS if other != perk
        )
    return rule


# Checked top to bottom, first match wins. A tie for the best rank matches
# nothing and falls through to the default.
PERK_RULES = [(_sole_best_rank(perk), PERK_LABELS[perk]) for perk in PERKS[:-1]]
DEFAULT_PERK = PERK_LABELS['exclusive_discount']


def assign_perk(ranks) -> str:
    """Pick the perk for one user from a mapping of rank_<perk> values."""
    for rule, perk in PERK_RULES:
        if rule(ranks):
            return perk
    return DEFAULT_PERK


@timer_decorator
def assign_perks(ranks: pd.DataFrame) -> pd.DataFrame:
    """Assign exactly one perk to every ranked user."""
    perks = ranks[['user_id']].copy()
    perks['perk_assignment'] = [assign_perk(row) for _, row in ranks.iterrows()]

    if not perks.empty:
        logger.info(f"Perk distribution:\n{perks['perk_assignment'].value_counts()}")
    return perks


PROFILE_RULES = [
    (lambda age, has_children, num_trips: age > PROFILE_THRESHOLDS['senior_age'],
     'senior traveller'),
    (lambda age, has_children, num_trips: has_children,
     'family travellers'),
    (lambda age, has_children, num_trips: (age < PROFILE_THRESHOLDS['young_age']
                                           and num_trips < PROFILE_THRESHOLDS['frequent_trips']),
     'dreamer traveller'),
    (lambda age, has_children, num_trips: (age < PROFILE_THRESHOLDS['young_age']
                                           and num_trips >= PROFILE_THRESHOLDS['frequent_trips']),
     'young frequent traveller'),
    (lambda age, has_children, num_trips: (age >= PROFILE_THRESHOLDS['young_age']
                                           and num_trips > PROFILE_THRESHOLDS['business_trips']),
     'business traveller'),
]
DEFAULT_PROFILE = 'Normal traveller'


def classify_traveler(age, has_children, num_trips) -> str:
    """Describe a traveller from their age, children and number of trips."""
    for rule, profile in PROFILE_RULES:
        if rule(age, has_children, num_trips):
            return profile
    return DEFAULT_PROFILE


def classify_travelers(customers: pd.DataFrame) -> pd.Series:
    """Apply classify_traveler to every row with age, has_children and num_trips."""
    has_children = flag(customers['has_children'])
    # Missing ages become NaN, which fails every age comparison
    ages = customers['age'].astype(float)
    profiles = [
        classify_traveler(age, children, num_trips)
        for age, children, num_trips in zip(ages, has_children, customers['num_trips'])
    ]
    return pd.Series(profiles, index=customers.index, dtype=object)


@timer_decorator
def build_customer_profiles(users: pd.DataFrame, user_metrics: pd.DataFrame,
                            trip_metrics: pd.DataFrame, perks: pd.DataFrame, as_of) -> pd.DataFrame:
    """
    Join demographics, user and trip metrics, traveller profile and perk per user.

    Args:
        users: Raw users table
        user_metrics: Output of aggregate_user_metrics
        trip_metrics: Output of aggregate_trip_metrics
        perks: Output of assign_perks
        as_of: Date at which ages are evaluated

    Returns:
        DataFrame with one row per eligible user, sorted by user_id
    """
    customers = (
        user_metrics
        .merge(trip_metrics, on='user_id', how='inner')
        .merge(perks, on='user_id', how='inner')
        .merge(users[DEMOGRAPHIC_COLUMNS].drop_duplicates('user_id'), on='user_id', how='left')
    )
    customers['age'] = calculate_age(customers['birthdate'], as_of).astype('Int64')
    customers['traveler_profile'] = classify_travelers(customers)

    leading = DEMOGRAPHIC_COLUMNS[:3] + ['age'] + DEMOGRAPHIC_COLUMNS[3:]
    metric_columns = [col for col in user_metrics.columns if col != 'user_id']
    trip_columns = [col for col in trip_metrics.columns if col != 'user_id']
    customers = customers[leading + metric_columns + trip_columns + ['traveler_profile', 'perk_assignment']]

    customers = customers.sort_values('user_id').reset_index(drop=True)
    logger.info(f"Traveller profiles:\n{customers['traveler_profile'].value_counts()}")
    return customers
