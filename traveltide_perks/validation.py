import os
import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns
from typing import Dict
from traveltide_perks.config import OUTPUT_DIR
from traveltide_perks.segmentation import PERK_LABELS, RANK_COLUMNS, DEFAULT_PERK, PROFILE_RULES, DEFAULT_PROFILE
from traveltide_perks.utils import setup_logging

# Setup logging
logger = setup_logging(__name__)


def load_results(output_dir=OUTPUT_DIR):
    """Load the customer table and the scores/ranks written by save_perks_assignment."""
    customers = pd.read_csv(os.path.join(output_dir, 'customer_perks.csv'))
    scores = pd.read_csv(os.path.join(output_dir, 'perk_scores.csv'))
    return customers, scores


def validate_business_rules(customers: pd.DataFrame, ranks: pd.DataFrame) -> Dict:
    """Validate that the perk and profile rules hold for every customer."""
    merged = customers[['user_id', 'perk_assignment']].merge(ranks, on='user_id', how='left')
    best_rank = merged[RANK_COLUMNS].min(axis=1)
    shared_best = merged[RANK_COLUMNS].eq(best_rank, axis=0).sum(axis=1) > 1
    known_profiles = {profile for _, profile in PROFILE_RULES} | {DEFAULT_PROFILE}

    rates_in_range = all(
        customers[col].dropna().between(0, 1).all()
        for col in ['booking_rate', 'cancellation_rate']
    )

    rules_validation = {
        'one_row_per_customer': customers['user_id'].is_unique,
        'all_customers_have_perks': bool(customers['perk_assignment'].notna().all()),
        'known_perks_only': bool(customers['perk_assignment'].isin(PERK_LABELS.values()).all()),
        'ties_fall_back_to_default': bool(
            (merged.loc[shared_best, 'perk_assignment'] == DEFAULT_PERK).all()
        ),
        'all_customers_ranked': bool(merged[RANK_COLUMNS].notna().all().all()),
        'rates_in_range': bool(rates_in_range),
        'known_profiles_only': bool(customers['traveler_profile'].isin(known_profiles).all())
    }

    for rule, passed in rules_validation.items():
        if not passed:
            logger.warning(f"Business rule failed: {rule}")
    return rules_validation


def plot_perk_distribution(customers: pd.DataFrame, path) -> None:
    """Count plot of assigned perks split by traveller profile."""
    plt.figure(figsize=(12, 6))
    sns.countplot(data=customers, x='perk_assignment', hue='traveler_profile',
                  order=sorted(PERK_LABELS.values()))
    plt.title('Perk Distribution by Traveller Profile')
    plt.xlabel('Perk')
    plt.ylabel('Number of Customers')
    plt.xticks(rotation=30)
    plt.legend(title='Traveller profile', bbox_to_anchor=(1.05, 1), loc='upper left')
    plt.tight_layout()
    plt.savefig(path)
    plt.close()


def main(output_dir=OUTPUT_DIR):
    """Main validation function."""
    logger.info("Loading results...")
    customers, scores = load_results(output_dir)

    logger.info("Validating business rules...")
    rules_validation = validate_business_rules(customers, scores[['user_id'] + RANK_COLUMNS])
    for rule, result in rules_validation.items():
        logger.info(f"{rule}: {result}")

    plot_perk_distribution(customers, os.path.join(output_dir, 'perk_distribution.png'))

    logger.info(f"Total unique customers: {customers['user_id'].nunique()}")
    logger.info(f"Perk distribution:\n{customers['perk_assignment'].value_counts(normalize=True).round(3) * 100}")

    if not all(rules_validation.values()):
        raise SystemExit(1)


if __name__ == "__main__":
    main()
