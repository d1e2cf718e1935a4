import os
import sys
from collections import namedtuple
from typing import Dict
import pandas as pd
from traveltide_perks.config import PIPELINE_CONFIG, OUTPUT_DIR
from traveltide_perks.data_loader import (
    DatabaseConnection, load_raw_tables, load_raw_tables_from_csv,
    prepare_raw_tables, validate_schema
)
from traveltide_perks.feature_engineering import (
    select_eligible_users, enrich_sessions, aggregate_user_metrics, aggregate_trip_metrics
)
from traveltide_perks.segmentation import (
    calculate_perk_scores, rank_perk_scores, assign_perks, build_customer_profiles
)
from traveltide_perks.utils import setup_logging, timer_decorator, haversine_distance

# Setup logging
logger = setup_logging(__name__)

PipelineResult = namedtuple('PipelineResult', ['customers', 'scores', 'ranks'])


def resolve_config(overrides: Dict = None) -> Dict:
    """Merge overrides into PIPELINE_CONFIG, rejecting unknown keys."""
    config = dict(PIPELINE_CONFIG)
    if overrides:
        unknown = sorted(set(overrides) - set(config))
        if unknown:
            raise ValueError(f"Unknown pipeline options: {unknown}")
        config.update(overrides)
    return config


@timer_decorator
def run_pipeline(users: pd.DataFrame, sessions: pd.DataFrame, flights: pd.DataFrame,
                 hotels: pd.DataFrame, config: Dict = None, as_of=None,
                 distance_func=haversine_distance) -> PipelineResult:
    """
    Compute traveller profiles and perk assignments for the eligible cohort.

    The input schema is checked before anything is computed; a missing
    column aborts the run with SchemaValidationError.

    Args:
        users, sessions, flights, hotels: Raw tables
        config: Partial overrides of PIPELINE_CONFIG
        as_of: Evaluation date for ages, defaults to today
        distance_func: Great-circle distance in kilometers

    Returns:
        PipelineResult with the customer table, perk scores and perk ranks
    """
    tables = {'users': users, 'sessions': sessions, 'flights': flights, 'hotels': hotels}
    validate_schema(tables)
    config = resolve_config(config)
    as_of = pd.Timestamp(as_of) if as_of is not None else pd.Timestamp.now().normalize()
    logger.info(f"Running perk pipeline as of {as_of.date()} with {config}")

    tables = prepare_raw_tables(tables)

    eligible_users = select_eligible_users(
        tables['sessions'], config['cutoff_date'], config['min_sessions']
    )
    enriched = enrich_sessions(
        tables['sessions'], tables['users'], tables['flights'], tables['hotels'],
        eligible_users, distance_func
    )
    user_metrics = aggregate_user_metrics(enriched)
    trip_metrics = aggregate_trip_metrics(enriched, user_metrics)

    scores = calculate_perk_scores(enriched, trip_metrics, as_of, config)
    ranks = rank_perk_scores(scores)
    perks = assign_perks(ranks)

    customers = build_customer_profiles(tables['users'], user_metrics, trip_metrics, perks, as_of)
    return PipelineResult(customers, scores, ranks)


def save_perks_assignment(result: PipelineResult, output_dir=OUTPUT_DIR) -> None:
    """
    Write the customer table, scores with ranks and a markdown summary.

    Args:
        result: Output of run_pipeline
        output_dir: Directory receiving customer_perks.csv, perk_scores.csv
            and perk_summary.md
    """
    os.makedirs(output_dir, exist_ok=True)

    customers_path = os.path.join(output_dir, 'customer_perks.csv')
    result.customers.to_csv(customers_path, index=False)
    logger.info(f"Customer perks saved to {customers_path}")

    scores_path = os.path.join(output_dir, 'perk_scores.csv')
    result.scores.merge(result.ranks, on='user_id').to_csv(scores_path, index=False)
    logger.info(f"Perk scores saved to {scores_path}")

    customers = result.customers
    summary_path = os.path.join(output_dir, 'perk_summary.md')
    with open(summary_path, 'w', encoding='utf-8') as md_file:
        md_file.write("# Perk Assignment Results\n\n")
        md_file.write(f"Total customers: {len(customers)}\n\n")
        md_file.write("## Distribution by perk\n\n")
        md_file.write(customers['perk_assignment'].value_counts().sort_index().to_markdown() + "\n\n")
        md_file.write("## Perks by traveller profile\n\n")
        md_file.write(
            pd.crosstab(customers['traveler_profile'], customers['perk_assignment']).to_markdown() + "\n\n"
        )
        md_file.write("## Average scores\n\n")
        md_file.write(result.scores.drop(columns='user_id').mean().round(3).to_markdown() + "\n")
    logger.info(f"Summary saved to {summary_path}")


def main(data_dir=None, output_dir=OUTPUT_DIR):
    """Load a snapshot (CSV directory or database), run the pipeline, save results."""
    if data_dir:
        tables = load_raw_tables_from_csv(data_dir)
    else:
        with DatabaseConnection() as conn:
            tables = load_raw_tables(conn)

    result = run_pipeline(**tables)
    save_perks_assignment(result, output_dir)
    logger.info(f"Sample of final results:\n{result.customers.head()}")


if __name__ == "__main__":
    main(sys.argv[1] if len(sys.argv) > 1 else None)
