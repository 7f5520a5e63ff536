"""
Text formatting for compaction reports.
"""

from ..agent.compaction import CompactionResult, TokenStats


def format_compaction_result(result: CompactionResult) -> str:
    if not result.success:
        return f"❌ {result.summary}"

    if result.previous_tokens == 0:
        return f"ℹ️ {result.summary}"

    return (
        "🗜️ *Session compacted*\n\n"
        f"• Before: {result.previous_tokens:,} tokens\n"
        f"• After: {result.new_tokens:,} tokens\n"
        f"• Saved: {result.tokens_saved:,} tokens\n"
        f"• Trigger: {result.trigger.value}"
    )


def format_token_stats(stats: TokenStats, uncompacted_messages: int | None = None) -> str:
    """Working-history size against the compaction threshold and window."""
    lines = ["📊 *Context*", ""]
    if uncompacted_messages is not None:
        lines.append(f"• Messages since last compaction: {uncompacted_messages}")
    lines.append(f"• Estimated tokens: {stats.total_tokens:,} / {stats.threshold:,}")
    lines.append(f"• Window used: {stats.percent_used:.1f}%")
    if stats.should_compact:
        lines.append("")
        lines.append("_Compaction recommended_")
    return "\n".join(lines)
