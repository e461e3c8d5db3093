"""Print the anamnesis scores of one or every user, answer by answer.

Uses the same engine as the score endpoints, for checking results by hand.

Usage:
    python calc_scores.py
    python calc_scores.py --user-id <id>
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from likeme.db import AsyncSessionMaker, engine
from likeme.logging_config import setup_logging
from likeme.services.scores import audit_user_scores, list_answering_users, load_global_maxima
from scoring.markers import Category

logger = logging.getLogger("calc_scores")


def _fmt(value: float | None) -> str:
    return "-" if value is None else f"{value:g}"


async def run(user_id: str | None) -> int:
    async with AsyncSessionMaker() as session:
        try:
            user_ids = [user_id] if user_id else await list_answering_users(session)
            if not user_ids:
                print("No anamnesis answers stored.")
                return 0

            maxima = await load_global_maxima(session)
            print("=== Global maxima ===")
            for category in Category:
                group = maxima.categories[category]
                print(f"{category.value}: {group.total_questions} questions, max {_fmt(group.max_score)}")

            for uid in user_ids:
                audit = await audit_user_scores(session, uid)
                print()
                print("=" * 70)
                print(f"User: {uid}")
                print("=" * 70)
                if not audit.lines:
                    print("  No answers.")
                    continue

                for line in audit.lines:
                    print(
                        f"  {line.question_key}: option={line.option_key or '-'} "
                        f"value={_fmt(line.value)} max={_fmt(line.max_value)} "
                        f"category={line.category or '-'} marker={line.marker or '-'}"
                    )

                print("-" * 70)
                for category, breakdown in audit.categories.items():
                    print(
                        f"  {category.value}: {_fmt(breakdown.score)}/{_fmt(breakdown.max_score)} "
                        f"= {breakdown.percentage}% "
                        f"(answered {breakdown.answered_questions}/{breakdown.total_questions}, "
                        f"{_fmt(breakdown.score)}/{_fmt(breakdown.answered_max_score)} "
                        f"= {breakdown.answered_percentage}%)"
                    )
                for breakdown in audit.markers:
                    if breakdown.total_questions:
                        print(f"  marker {breakdown.name}: {breakdown.percentage}%")
        except Exception as e:
            logger.error(f"Score audit failed: {e}", exc_info=True)
            return 1
        finally:
            await engine.dispose()

    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Print anamnesis scores for checking")
    parser.add_argument(
        "--user-id",
        default=os.environ.get("USER_ID") or None,
        help="Only this user (default: every user with answers; USER_ID env also works)",
    )
    args = parser.parse_args()

    setup_logging()
    sys.exit(asyncio.run(run(args.user_id)))


if __name__ == "__main__":
    main()
