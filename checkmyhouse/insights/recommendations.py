"""
recommendations.py - Performance insights for query-log and table statistics

Turns the numeric metrics returned by the analyzer queries into
human-readable recommendations and coarse performance levels. Every
function takes plain row dicts and never touches ClickHouse.
"""
import re
from typing import Any, Dict, List, Optional

SEVERITY_CRITICAL = "critical"
SEVERITY_WARNING = "warning"
SEVERITY_INFO = "info"

LEVEL_EXCELLENT = "excellent"
LEVEL_GOOD = "good"
LEVEL_WARNING = "warning"
LEVEL_CRITICAL = "critical"
LEVEL_UNKNOWN = "unknown"

# Level boundaries per metric. For "higher is better" metrics the values
# are lower bounds, otherwise upper bounds.
THRESHOLDS: Dict[str, Dict[str, float]] = {
    "duration": {"excellent": 100, "good": 1000, "warning": 5000, "critical": 10000},
    "memory": {
        "excellent": 104857600,     # 100MB
        "good": 1073741824,         # 1GB
        "warning": 5368709120,      # 5GB
        "critical": 10737418240,    # 10GB
    },
    "cpu_wait_ratio": {"excellent": 0.1, "good": 0.3, "warning": 0.5, "critical": 0.7},
    "cache_hit_rate": {"excellent": 0.95, "good": 0.8, "warning": 0.5, "critical": 0.3},
    "result_efficiency": {"excellent": 0.5, "good": 0.1, "warning": 0.01, "critical": 0.001},
    "rows_per_second": {"excellent": 1000000, "good": 100000, "warning": 10000, "critical": 1000},
}

HIGHER_IS_BETTER = frozenset({"cache_hit_rate", "result_efficiency", "rows_per_second"})

IO_WAIT_RATIO_LIMIT = 0.5
CACHE_HIT_RATE_LIMIT = 0.5
RESULT_EFFICIENCY_LIMIT = 0.01
MEMORY_PER_ROW_LIMIT = 10240            # bytes
NETWORK_SEND_LIMIT = 1073741824         # bytes
P99_DURATION_LIMIT_MS = 10000
PARTS_PER_PARTITION_LIMIT = 100
COMPRESSION_RATIO_LIMIT = 2
MV_AGGREGATION_QUERY_LIMIT = 5

_AGGREGATE_FN_RE = re.compile(r'\b(?:sum|count|avg)\s*\(', re.IGNORECASE)


def _num(value: Any) -> float:
    """Metrics can arrive as None or as strings for 64-bit columns."""
    if value is None or value == "":
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def format_bytes(num_bytes: float) -> str:
    size = _num(num_bytes)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if abs(size) < 1024 or unit == "TB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} TB"


def get_performance_level(value: Any, metric: str) -> str:
    """Grade a metric value as excellent / good / warning / critical."""
    thresholds = THRESHOLDS.get(metric)
    if thresholds is None or value is None:
        return LEVEL_UNKNOWN

    value = _num(value)
    if metric in HIGHER_IS_BETTER:
        if value >= thresholds["excellent"]:
            return LEVEL_EXCELLENT
        if value >= thresholds["good"]:
            return LEVEL_GOOD
        if value >= thresholds["warning"]:
            return LEVEL_WARNING
        return LEVEL_CRITICAL

    if value <= thresholds["excellent"]:
        return LEVEL_EXCELLENT
    if value <= thresholds["good"]:
        return LEVEL_GOOD
    if value <= thresholds["warning"]:
        return LEVEL_WARNING
    return LEVEL_CRITICAL


def performance_levels(query: Dict[str, Any]) -> Dict[str, str]:
    """Levels for the headline metrics of one aggregated query pattern."""
    return {
        "duration": get_performance_level(query.get("p99_duration_ms"), "duration"),
        "memory": get_performance_level(query.get("p99_memory_bytes"), "memory"),
        "cpu_wait": get_performance_level(query.get("io_wait_ratio"), "cpu_wait_ratio"),
        "cache": get_performance_level(query.get("disk_cache_hit_rate"), "cache_hit_rate"),
        "efficiency": get_performance_level(query.get("result_efficiency"), "result_efficiency"),
    }


def _recommendation(severity: str, category: str, title: str, description: str,
                    actions: List[str]) -> Dict[str, Any]:
    return {
        "type": severity,
        "category": category,
        "title": title,
        "description": description,
        "recommendations": actions,
    }


def generate_query_optimizations(query: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Recommendations for one row of the query-analyzer aggregate.

    Metrics missing from the row are not evaluated, so a partial row only
    yields the checks it has data for.
    """
    optimizations = []

    if "io_wait_ratio" in query and _num(query["io_wait_ratio"]) > IO_WAIT_RATIO_LIMIT:
        optimizations.append(_recommendation(
            SEVERITY_CRITICAL, "I/O Optimization", "High I/O Wait Time",
            f"Query spends {_num(query['io_wait_ratio']) * 100:.0f}% waiting on I/O",
            [
                "Check disk performance and consider faster storage (SSD)",
                "Review concurrent I/O operations",
                "Optimize table storage format (compression codec)",
                "Consider pre-aggregation with materialized views",
            ],
        ))

    if "disk_cache_hit_rate" in query and _num(query["disk_cache_hit_rate"]) < CACHE_HIT_RATE_LIMIT:
        optimizations.append(_recommendation(
            SEVERITY_WARNING, "Cache Optimization", "Low Cache Hit Rate",
            f"Only {_num(query['disk_cache_hit_rate']) * 100:.0f}% of disk reads from cache",
            [
                "Increase cache size if memory available",
                "Review query frequency and data access patterns",
                "Consider query result caching",
                "Optimize working set to fit in available cache",
            ],
        ))

    if "result_efficiency" in query:
        efficiency = _num(query["result_efficiency"])
        if efficiency < RESULT_EFFICIENCY_LIMIT:
            if efficiency > 0:
                description = f"Query reads {round(1 / efficiency)}x more rows than it returns"
            else:
                description = "Query returns no rows relative to the rows it reads"
            optimizations.append(_recommendation(
                SEVERITY_CRITICAL, "Query Selectivity", "Inefficient Table Scan", description,
                [
                    "Add skip index (minmax, set, bloom_filter) on filter columns",
                    "Improve WHERE clause selectivity",
                    "Consider partitioning by frequently filtered columns",
                    "Add projection for common query patterns",
                    "Review primary key and sorting key alignment",
                ],
            ))

    if _num(query.get("avg_memory_per_row")) > MEMORY_PER_ROW_LIMIT:
        optimizations.append(_recommendation(
            SEVERITY_WARNING, "Memory Optimization", "High Memory per Row",
            f"Using {format_bytes(query['avg_memory_per_row'])} per row",
            [
                "Optimize data types (use smaller types where possible)",
                "Review GROUP BY cardinality",
                "Consider LowCardinality for string columns with few unique values",
                "Use appropriate compression codecs",
                "For aggregations, use AggregatingMergeTree",
            ],
        ))

    if _num(query.get("total_network_send_bytes")) > NETWORK_SEND_LIMIT:
        optimizations.append(_recommendation(
            SEVERITY_WARNING, "Distributed Query", "High Network Traffic",
            f"Transferring {format_bytes(query['total_network_send_bytes'])} across network",
            [
                "Review sharding key distribution",
                "Use GLOBAL IN for distributed joins",
                "Consider data co-location",
                "Use distributed_group_by_no_merge when appropriate",
            ],
        ))

    if _num(query.get("p99_duration_ms")) > P99_DURATION_LIMIT_MS:
        optimizations.append(_recommendation(
            SEVERITY_CRITICAL, "Performance", "Slow Query Performance",
            f"P99 latency is {_num(query['p99_duration_ms']) / 1000:.1f} seconds",
            [
                "Analyze query execution plan with EXPLAIN",
                "Check for missing indexes",
                "Consider materialized views for complex aggregations",
                "Optimize JOIN operations (order, algorithm)",
            ],
        ))

    return optimizations


def generate_table_health_recommendations(stats: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Recommendations from the system.parts summary of one table."""
    recommendations = []
    if not stats:
        return recommendations

    total_parts = _num(stats.get("total_parts"))
    total_partitions = _num(stats.get("total_partitions"))
    parts_per_partition = total_parts / total_partitions if total_partitions > 0 else total_parts

    if parts_per_partition > PARTS_PER_PARTITION_LIMIT:
        recommendations.append(_recommendation(
            SEVERITY_CRITICAL, "Table Maintenance", "Excessive Parts",
            f"{total_parts:,.0f} active parts ({parts_per_partition:.0f} per partition)",
            [
                "Run OPTIMIZE TABLE to merge parts",
                "Review insert frequency and batch size",
                "Adjust parts_to_delay_insert and parts_to_throw_insert settings",
            ],
        ))

    compressed = _num(stats.get("total_compressed_bytes"))
    uncompressed = _num(stats.get("total_uncompressed_bytes"))
    if compressed > 0 and uncompressed > 0:
        ratio = uncompressed / compressed
        if ratio < COMPRESSION_RATIO_LIMIT:
            recommendations.append(_recommendation(
                SEVERITY_INFO, "Storage Optimization", "Low Compression Ratio",
                f"Compression ratio is only {ratio:.2f}x",
                [
                    "Review compression codec settings",
                    "Consider LZ4HC or ZSTD for better compression",
                    "Check data types (use appropriate sizes)",
                ],
            ))

    return recommendations


def _is_aggregation(query: Dict[str, Any]) -> bool:
    text = query.get("normalized_query") or ""
    return "GROUP BY" in text.upper() or bool(_AGGREGATE_FN_RE.search(text))


def generate_mv_recommendations(queries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Hint at materialized views when aggregation patterns repeat."""
    aggregations = [q for q in queries if _is_aggregation(q)]
    if len(aggregations) <= MV_AGGREGATION_QUERY_LIMIT:
        return []

    total_executions = sum(int(_num(q.get("execution_count"))) for q in aggregations)
    return [_recommendation(
        SEVERITY_INFO, "Materialized View Opportunity", "Frequent Aggregations Detected",
        f"{len(aggregations)} aggregation queries executed {total_executions:,} times",
        [
            "Consider creating materialized views for common aggregations",
            "Use AggregatingMergeTree for incremental aggregations",
            "Pre-compute expensive GROUP BY operations",
        ],
    )]


def annotate_queries(queries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Attach ``optimizations`` and ``performance`` to every aggregated query row."""
    for query in queries:
        query["optimizations"] = generate_query_optimizations(query)
        query["performance"] = performance_levels(query)
    return queries
