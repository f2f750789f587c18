"""Core services for the Promptly Printed backend.

Everything here is framework-free: services take a :class:`Database` and
raise :mod:`promptly.core.errors` exceptions, and the API layer maps those
to HTTP responses.

Architecture Overview
---------------------
1. **Configuration** (config.py):
   - Environment-based settings using Pydantic Settings
   - All settings prefixed with PROMPTLY_ in .env files

2. **Persistence** (database.py):
   - SQLite schema and ``BEGIN IMMEDIATE`` transactions

3. **Ledgers**:
   - points.py: competition points, levels and audit history
   - credits.py: AI generation credits, monthly resets, guest allowance

4. **Workflows**:
   - competitions.py: entries, likes, votes, leaderboard, purchase checks
   - orders.py: Prodigi action gate, refunds and webhook application
   - gamification.py: achievement and tier rules (pure functions)
   - print_image.py: 300 DPI print-ready artwork

Usage Example
-------------
    from promptly.core import CompetitionService, Database, PointsLedger, config

    db = Database(config.database_path)
    ledger = PointsLedger(db, config.points_per_level)
    competitions = CompetitionService(db, ledger)
    board = competitions.leaderboard("comp_1", limit=10)
"""

from promptly.core.competitions import CompetitionService, rank_leaderboard, score
from promptly.core.config import PromptlyConfig, config
from promptly.core.credits import CreditLedger
from promptly.core.database import Database
from promptly.core.orders import OrderActionService
from promptly.core.points import COMPETITION_POINTS, PointsLedger, level_for_points

__all__ = [
    "COMPETITION_POINTS",
    "CompetitionService",
    "CreditLedger",
    "Database",
    "OrderActionService",
    "PointsLedger",
    "PromptlyConfig",
    "config",
    "level_for_points",
    "rank_leaderboard",
    "score",
]
