from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd
import typer
from dotenv import load_dotenv
from rich import print, print_json
from rich.logging import RichHandler
from rich.table import Table

from .config import WingmanSettings
from .errors import InvalidRequestError, PackNotReadyError, QuotaExceededError, WingmanError
from .models import Intent, MatchResult, PackSubmission, SearchRequest, SearchResponse
from .pack_service import InMemoryPackRepository, WingmanPackService
from .pipeline import WingmanPipeline
from .profile_embeddings import embed_profiles
from .store import InMemoryAnalyticsSink, InMemoryPreferenceStore, InMemoryProfileStore


app = typer.Typer(help="Wingman matching CLI")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")):
	load_dotenv()
	logging.basicConfig(
		level=logging.DEBUG if verbose else logging.INFO,
		format="%(message)s",
		datefmt="[%X]",
		handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
	)


def _embedding_model(local: bool, settings: WingmanSettings):
	if local:
		from .local_models import HashingEmbeddingModel
		return HashingEmbeddingModel()
	from .openai_models import OpenAIEmbeddingModel
	return OpenAIEmbeddingModel(model=settings.embedding_model)


def _build_pipeline(
	profiles_csv: Path,
	local: bool,
	prefs_path: Optional[Path] = None,
) -> WingmanPipeline:
	settings = WingmanSettings.from_env()
	store = InMemoryProfileStore.from_csv(profiles_csv)
	initial: Dict[str, Dict[str, float]] = {}
	if prefs_path is not None:
		initial = json.loads(prefs_path.read_text(encoding="utf-8"))
	if local:
		from .local_models import KeywordIntentModel, TemplateExplanationModel
		intent_model = KeywordIntentModel()
		explanation_model = TemplateExplanationModel()
	else:
		from .openai_models import OpenAIExplanationModel, OpenAIIntentModel
		intent_model = OpenAIIntentModel(model=settings.chat_model)
		explanation_model = OpenAIExplanationModel(model=settings.chat_model)
	return WingmanPipeline(
		profiles=store,
		intent_model=intent_model,
		embedding_model=_embedding_model(local, settings),
		explanation_model=explanation_model,
		preferences=InMemoryPreferenceStore(initial),
		analytics=InMemoryAnalyticsSink(),
		settings=settings,
	)


def _render_matches(matches: List[MatchResult]) -> None:
	table = Table("#", "name", "course", "match %", "vector", "pref", "filters", "tagline")
	for i, m in enumerate(matches, start=1):
		p = m.profile
		table.add_row(
			str(i),
			f"{p.get('first_name', '')} {p.get('last_name', '')}".strip() or str(p.get("user_id")),
			str(p.get("course") or ""),
			f"{m.explanation.match_percentage} {m.explanation.vibe_emoji}",
			str(m.scores.vector),
			str(m.scores.preference),
			str(m.scores.filter_match),
			m.explanation.tagline,
		)
	print(table)


def _render_response(resp: SearchResponse, as_json: bool) -> None:
	if as_json:
		print_json(resp.model_dump_json())
		return
	print(f"[bold]{resp.commentary}[/bold]")
	print(f"[dim]intent: vibe={resp.intent.vibe} confidence={resp.intent.confidence:.2f} "
		f"filters={resp.intent.filters.active()}[/dim]")
	_render_matches(resp.matches)
	meta = resp.meta
	print(f"[dim]{meta.total_found} shown, pool={meta.pool_size}, next_offset={meta.next_offset}, "
		f"has_more={meta.has_more}, {meta.latency_ms} ms[/dim]")
	if meta.degraded_stages:
		print(f"[yellow]Degraded stages:[/yellow] {', '.join(meta.degraded_stages)}")
	if resp.refinement_hints:
		print(f"[cyan]Try:[/cyan] {' | '.join(resp.refinement_hints)}")


def _fail(exc: WingmanError) -> None:
	if isinstance(exc, InvalidRequestError):
		print(f"[red]{exc.code}:[/red] {exc.user_message}")
	elif isinstance(exc, QuotaExceededError):
		print(f"[red]Daily limit reached ({exc.used}/{exc.limit}).[/red] Resets at {exc.resets_at}")
	elif isinstance(exc, PackNotReadyError):
		print(f"[yellow]Pack not ready yet:[/yellow] {exc.current}/{exc.target} friends replied")
	else:
		print(f"[red]{exc}[/red]")
	raise typer.Exit(code=1)


@app.command()
def embed(
	csv_path: Path = typer.Argument(..., help="Profiles CSV"),
	out_path: Optional[Path] = typer.Option(None, help="Where to write the embedded CSV"),
	batch_size: int = typer.Option(100, help="Profiles per embedding request"),
	local: bool = typer.Option(False, "--local/--openai", help="Use offline hashing embeddings"),
):
	"""Embed profile text and write an 'embedding' column."""
	df = pd.read_csv(csv_path)
	settings = WingmanSettings.from_env()
	out_df = embed_profiles(df, _embedding_model(local, settings), batch_size=batch_size)
	out_df["embedding"] = out_df["embedding"].map(lambda v: json.dumps(v) if v is not None else None)
	out = out_path or csv_path.with_name(f"{csv_path.stem}_embedded.csv")
	out_df.to_csv(out, index=False)
	print(f"[green]Wrote embeddings to[/green] {out}")


@app.command()
def search(
	csv_path: Path = typer.Argument(..., help="Embedded profiles CSV"),
	user_id: str = typer.Argument(..., help="Who is searching"),
	query: str = typer.Argument(..., help="What they are looking for"),
	limit: int = typer.Option(20, help="Page size"),
	offset: int = typer.Option(0, help="Page offset"),
	exclude: List[str] = typer.Option([], help="User ids to leave out"),
	prefs: Optional[Path] = typer.Option(None, help="JSON of learned preferences per user"),
	local: bool = typer.Option(False, "--local/--openai", help="Use offline models"),
	as_json: bool = typer.Option(False, "--json", help="Print the raw response"),
):
	"""Search for matches from a free-text query."""
	pipeline = _build_pipeline(csv_path, local, prefs)
	request = SearchRequest(
		user_id=user_id, query_text=query, exclude_ids=exclude, limit=limit, offset=offset
	)
	try:
		resp = pipeline.search(request)
	except WingmanError as exc:
		_fail(exc)
		return
	_render_response(resp, as_json)


@app.command()
def refine(
	csv_path: Path = typer.Argument(..., help="Embedded profiles CSV"),
	user_id: str = typer.Argument(..., help="Who is searching"),
	original_query: str = typer.Argument(..., help="The previous query"),
	refinement: str = typer.Argument(..., help="Follow-up, e.g. 'but more outgoing'"),
	prior_intent: Optional[Path] = typer.Option(None, help="JSON of the previous response's intent"),
	limit: int = typer.Option(20, help="Page size"),
	prefs: Optional[Path] = typer.Option(None, help="JSON of learned preferences per user"),
	local: bool = typer.Option(False, "--local/--openai", help="Use offline models"),
	as_json: bool = typer.Option(False, "--json", help="Print the raw response"),
):
	"""Refine a previous search with a short follow-up."""
	pipeline = _build_pipeline(csv_path, local, prefs)
	prior = None
	if prior_intent is not None:
		prior = Intent.model_validate_json(prior_intent.read_text(encoding="utf-8"))
	try:
		resp = pipeline.refine(
			user_id, refinement, prior_intent=prior, original_query=original_query, limit=limit
		)
	except WingmanError as exc:
		_fail(exc)
		return
	_render_response(resp, as_json)


@app.command()
def pack(
	csv_path: Path = typer.Argument(..., help="Embedded profiles CSV"),
	user_id: str = typer.Argument(..., help="Pack owner"),
	submissions_path: Path = typer.Argument(..., help="JSON list of friend submissions"),
	target: Optional[int] = typer.Option(None, help="Submissions needed (default: all given)"),
	local: bool = typer.Option(False, "--local/--openai", help="Use offline models"),
	as_json: bool = typer.Option(False, "--json", help="Print the raw response"),
):
	"""Compile friends' submissions into a wingman pack and show its matches."""
	pipeline = _build_pipeline(csv_path, local)
	raw = json.loads(submissions_path.read_text(encoding="utf-8"))
	submissions = [PackSubmission.model_validate(s) for s in raw]
	repo = InMemoryPackRepository()
	repo.start_round(user_id, target_submissions=target or max(1, len(submissions)))
	try:
		for s in submissions:
			repo.submit(user_id, s)
		resp = WingmanPackService(pipeline, repo, analytics=pipeline.analytics).get_pack(user_id)
	except WingmanError as exc:
		_fail(exc)
		return
	if as_json:
		print_json(resp.model_dump_json())
		return
	summary = resp.compiled_summary
	if summary is not None:
		print(f"[bold]Friends say:[/bold] {', '.join(summary.top_words)}")
		if summary.green_flags:
			print(f"[green]Green flags:[/green] {', '.join(summary.green_flags)}")
		if summary.funniest_red_flag:
			print(f"[red]Red flag:[/red] {summary.funniest_red_flag}")
		for line in summary.hype_lines:
			print(f"[magenta]>[/magenta] {line}")
	print(f"[dim]{resp.wingman_prompt}[/dim]")
	_render_matches(resp.matches)


if __name__ == "__main__":
	app()
