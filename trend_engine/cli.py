"""
CLI: Command Line Interface for Trend Engine

支援 init-config、run 和 trending 命令。
"""

import click
import logging
from pathlib import Path
from typing import Optional

from trend_engine.config import EngineConfig
from trend_engine.collectors.feeds import load_activity_events, load_content_items, load_signal_batch
from trend_engine.engine import TREND_OVERVIEW_KEY, TrendEngine, topic_key, user_key
from trend_engine.errors import RecomputeFailed
from trend_engine.models import LearningMode
from trend_engine.utils import hashing

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@click.group()
def cli():
    """Trend-Aware Recommendation & Analytics Engine CLI"""
    pass


@cli.command()
@click.option('--out', default='config.yaml', help='Output config file path')
def init_config(out: str):
    """產生範本設定檔"""

    example_path = Path(__file__).parent.parent / 'config.example.yaml'

    if example_path.exists():
        with open(example_path, 'r', encoding='utf-8') as f:
            content = f.read()
    else:
        content = """# Trend Engine Configuration
index:
  dimension: 384
storage:
  mode: none
"""

    with open(out, 'w', encoding='utf-8') as f:
        f.write(content)

    click.echo(f"✓ Config file created: {out}")
    click.echo(f"  Edit this file and run: trend-engine run --config {out}")


def build_engine(config: Optional[str]) -> TrendEngine:
    """讀取設定、建立 engine 並從儲存後端還原狀態"""
    cfg = EngineConfig.from_yaml(config) if config else EngineConfig()
    logger.info(f"Config hash: {hashing.config_hash(cfg.model_dump())}")

    engine = TrendEngine.from_config(cfg)
    if engine.storage is not None:
        engine.restore()
    return engine


@cli.command()
@click.option('--config', default=None, help='Config YAML file path')
@click.option('--content', 'content_path', default=None, help='Content items JSONL')
@click.option('--signals', 'signals_path', default=None, help='Signal batch JSONL')
@click.option('--events', 'events_path', default=None, help='Activity events JSONL')
@click.option('--user', 'user_id', default=None, help='User to recommend for')
@click.option('--tags', default='', help='Comma-separated preference tags for --user')
@click.option('--mode', type=click.Choice([m.value for m in LearningMode]), default='discovery')
@click.option('-k', default=5, show_default=True, help='Number of recommendations')
def run(
    config: Optional[str],
    content_path: Optional[str],
    signals_path: Optional[str],
    events_path: Optional[str],
    user_id: Optional[str],
    tags: str,
    mode: str,
    k: int
):
    """載入資料、重算 trends、refresh aggregates 並輸出推薦"""

    click.echo("=" * 60)
    click.echo("Trend-Aware Recommendation & Analytics Engine")
    click.echo("=" * 60)

    engine = build_engine(config)

    try:
        # Step 1: Content
        if content_path:
            items, rejected = load_content_items(content_path, engine.config.index.dimension)
            engine.publish_many(items)
            click.echo(f"✓ Published {len(items)} content items ({rejected} rejected)")

        # Step 2: Signals + recompute
        if signals_path:
            records, rejected = load_signal_batch(signals_path)
            accepted, invalid = engine.ingest_signals(records)
            click.echo(f"✓ Ingested {accepted} signals ({rejected + invalid} rejected)")

        results, failures = engine.recompute_all()
        click.echo(f"✓ Recomputed {len(results)} topics ({len(failures)} failed)")

        # Step 3: Activity events
        if events_path:
            events, rejected = load_activity_events(events_path)
            applied = engine.record_events(events)
            click.echo(f"✓ Applied {applied} activity events ({rejected} rejected)")

        if user_id and tags:
            engine.set_profile(user_id, [t for t in tags.split(',') if t.strip()])

        # Step 4: Aggregates
        engine.schedule_refresh(TREND_OVERVIEW_KEY)
        if user_id:
            engine.schedule_refresh(user_key(user_id))
        refreshed = engine.tick()
        click.echo(f"✓ Refreshed {len(refreshed)} aggregates")

        # Step 5: Persist
        if engine.persist():
            click.echo(f"✓ Written to storage backend: {engine.config.storage.mode}")

        # Summary
        overview = engine.get_snapshot(TREND_OVERVIEW_KEY)
        if overview is not None:
            click.echo("\n" + "=" * 60)
            click.echo("TREND OVERVIEW")
            click.echo("=" * 60)
            click.echo(f"Topics: {overview.payload['topic_count']} " +
                       f"(active={overview.payload['active_count']})")
            click.echo(f"Status: {overview.payload['status_counts']}")

        if user_id:
            result = engine.recommend(user_id, LearningMode(mode), k)
            click.echo(f"\nTop {len(result.items)} recommendations for {user_id} " +
                       f"(mode={mode}, strategy={result.strategy}):")
            for i, rec in enumerate(result.items, 1):
                b = rec.breakdown
                click.echo(f"  {i}. {rec.content_id} Score={rec.score:.2f} " +
                           f"(align={b.alignment:.1f}, mode={b.mode_match:.1f}, " +
                           f"momentum={b.momentum:.1f}, novelty={b.novelty:.1f}) {rec.title}")

    except Exception as e:
        logger.error(f"Run failed: {e}", exc_info=True)
        raise
    finally:
        engine.close()


@cli.command()
@click.option('--config', default=None, help='Config YAML file path')
@click.option('--signals', 'signals_path', default=None, help='Signal batch JSONL')
@click.option('--min-momentum', default=6.0, show_default=True, help='Minimum momentum score')
@click.option('--limit', default=20, show_default=True, help='Maximum topics')
def trending(config: Optional[str], signals_path: Optional[str], min_momentum: float, limit: int):
    """列出 rising 中的 topics"""

    engine = build_engine(config)

    try:
        if signals_path:
            records, _ = load_signal_batch(signals_path)
            engine.ingest_signals(records)
            engine.recompute_all()

        topics = engine.trending(min_momentum, limit)
        if not topics:
            click.echo("No trending topics")
            return

        for i, trend in enumerate(topics, 1):
            click.echo(f"  {i}. {trend.topic} Momentum={trend.momentum_score:.2f}, " +
                       f"Priority={trend.priority_score:.2f}, Confidence={trend.confidence:.0%}")
            try:
                health = engine.force_refresh(topic_key(trend.topic))
                click.echo(f"     Content={health.payload['active_content_count']}, " +
                           f"Learners={health.payload['active_learners']}")
            except RecomputeFailed as e:
                logger.warning(f"Topic health unavailable for {trend.topic}: {e}")

        engine.persist()

    finally:
        engine.close()


if __name__ == "__main__":
    cli()
