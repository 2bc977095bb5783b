"""
queries.py - ClickHouse query templates

Placeholders use ``{name}`` and are filled by ``render_template``. Query-log
templates read from ``{table}`` so the caller can swap in a cluster-wide
``clusterAllReplicas(...)`` source.
"""

# ============================================
# DATABASE & TABLE DISCOVERY
# ============================================

GET_DATABASES = """
SELECT
  name,
  engine,
  data_path,
  metadata_path,
  uuid
FROM system.databases
WHERE name NOT IN ('system', 'information_schema', 'INFORMATION_SCHEMA')
ORDER BY name
"""

GET_DATABASE_TABLE_COUNTS = """
SELECT
  database,
  count() AS table_count
FROM system.tables
GROUP BY database
"""

GET_TABLES = """
SELECT
  database,
  name,
  engine,
  total_rows,
  total_bytes,
  lifetime_rows,
  lifetime_bytes,
  metadata_modification_time,
  create_table_query,
  engine_full,
  partition_key,
  sorting_key,
  primary_key,
  sampling_key
FROM system.tables
WHERE database = '{database}'
  AND engine NOT IN ('View', 'Dictionary')
ORDER BY name
"""

# Basic variant, valid on every supported server
GET_TABLE_COLUMNS = """
SELECT
  name,
  type,
  default_kind,
  default_expression,
  comment,
  is_in_partition_key,
  is_in_sorting_key,
  is_in_primary_key,
  is_in_sampling_key
FROM system.columns
WHERE database = '{database}'
  AND table = '{table}'
ORDER BY position
"""

# Extended variant, needs system.columns.codec_expression (20.1+)
GET_TABLE_COLUMNS_WITH_CODEC = """
SELECT
  name,
  type,
  default_kind,
  default_expression,
  comment,
  codec_expression,
  ttl_expression,
  is_in_partition_key,
  is_in_sorting_key,
  is_in_primary_key,
  is_in_sampling_key
FROM system.columns
WHERE database = '{database}'
  AND table = '{table}'
ORDER BY position
"""

GET_TABLE_PARTS = """
SELECT
  partition,
  name,
  rows,
  bytes_on_disk,
  data_compressed_bytes,
  data_uncompressed_bytes,
  marks,
  modification_time,
  min_date,
  max_date,
  level,
  primary_key_bytes_in_memory
FROM system.parts
WHERE database = '{database}'
  AND table = '{table}'
  AND active = 1
ORDER BY modification_time DESC
LIMIT 1000
"""

GET_TABLE_STATS = """
SELECT
  sum(rows) AS total_rows,
  sum(bytes_on_disk) AS total_bytes_on_disk,
  sum(data_compressed_bytes) AS total_compressed_bytes,
  sum(data_uncompressed_bytes) AS total_uncompressed_bytes,
  count() AS total_parts,
  count(DISTINCT partition) AS total_partitions,
  max(modification_time) AS last_modified,
  min(min_date) AS min_date,
  max(max_date) AS max_date
FROM system.parts
WHERE database = '{database}'
  AND table = '{table}'
  AND active = 1
"""

# ============================================
# CAPABILITY PROBES
# ============================================

GET_VERSION = "SELECT version() AS version"

PROBE_TABLE_EXISTS = (
    "SELECT 1 FROM system.tables "
    "WHERE database = '{database}' AND name = '{table}' LIMIT 1"
)

PROBE_COLUMN_EXISTS = (
    "SELECT 1 FROM system.columns "
    "WHERE database = '{database}' AND table = '{table}' AND name = '{column}' LIMIT 1"
)

PROBE_SYSTEM_TABLE_ACCESS = "SELECT 1 FROM system.{table} LIMIT 1"

GET_CLUSTERS = """
SELECT
  cluster,
  shard_num,
  replica_num,
  host_name,
  host_address,
  port
FROM system.clusters
ORDER BY cluster, shard_num, replica_num
"""

# ============================================
# COMPREHENSIVE QUERY ANALYZER
# ============================================

QUERY_ANALYZER_AGGREGATE = """
SELECT
  normalized_query_hash,
  any(normalizeQuery(query)) AS normalized_query,
  count() AS execution_count,
  countIf(exception != '') AS error_count,
  countIf(exception != '') / count() AS error_rate,

  min(query_duration_ms) AS min_duration_ms,
  max(query_duration_ms) AS max_duration_ms,
  avg(query_duration_ms) AS avg_duration_ms,
  quantile(0.50)(query_duration_ms) AS p50_duration_ms,
  quantile(0.90)(query_duration_ms) AS p90_duration_ms,
  quantile(0.95)(query_duration_ms) AS p95_duration_ms,
  quantile(0.99)(query_duration_ms) AS p99_duration_ms,
  sum(query_duration_ms) AS total_duration_ms,

  min(memory_usage) AS min_memory_bytes,
  max(memory_usage) AS max_memory_bytes,
  avg(memory_usage) AS avg_memory_bytes,
  quantile(0.50)(memory_usage) AS p50_memory_bytes,
  quantile(0.90)(memory_usage) AS p90_memory_bytes,
  quantile(0.95)(memory_usage) AS p95_memory_bytes,
  quantile(0.99)(memory_usage) AS p99_memory_bytes,
  sum(memory_usage) AS total_memory_bytes,

  max(peak_memory_usage) AS max_peak_memory_bytes,
  avg(peak_memory_usage) AS avg_peak_memory_bytes,
  quantile(0.99)(peak_memory_usage) AS p99_peak_memory_bytes,

  avg(ProfileEvents['UserTimeMicroseconds'] / 1000000) AS avg_cpu_user_seconds,
  quantile(0.99)(ProfileEvents['UserTimeMicroseconds'] / 1000000) AS p99_cpu_user_seconds,
  sum(ProfileEvents['UserTimeMicroseconds'] / 1000000) AS total_cpu_user_seconds,

  avg(ProfileEvents['SystemTimeMicroseconds'] / 1000000) AS avg_cpu_system_seconds,
  sum(ProfileEvents['SystemTimeMicroseconds'] / 1000000) AS total_cpu_system_seconds,

  avg(ProfileEvents['OSCPUWaitMicroseconds'] / 1000000) AS avg_cpu_wait_seconds,
  sum(ProfileEvents['OSCPUWaitMicroseconds'] / 1000000) AS total_cpu_wait_seconds,

  avg(read_rows) AS avg_read_rows,
  quantile(0.99)(read_rows) AS p99_read_rows,
  sum(read_rows) AS total_read_rows,
  sum(written_rows) AS total_written_rows,
  avg(result_rows) AS avg_result_rows,

  avg(read_bytes) AS avg_read_bytes,
  quantile(0.99)(read_bytes) AS p99_read_bytes,
  sum(read_bytes) AS total_read_bytes,
  sum(written_bytes) AS total_written_bytes,

  sum(ProfileEvents['OSReadBytes']) AS total_os_read_bytes,
  sum(ProfileEvents['OSWriteBytes']) AS total_os_write_bytes,

  sum(ProfileEvents['NetworkSendBytes']) AS total_network_send_bytes,
  sum(ProfileEvents['NetworkReceiveBytes']) AS total_network_receive_bytes,

  sum(ProfileEvents['DiskCacheHits']) AS total_disk_cache_hits,
  sum(ProfileEvents['DiskCacheMisses']) AS total_disk_cache_misses,
  if(total_disk_cache_hits + total_disk_cache_misses > 0,
     total_disk_cache_hits / (total_disk_cache_hits + total_disk_cache_misses),
     0) AS disk_cache_hit_rate,

  sum(ProfileEvents['MarkCacheHits']) AS total_mark_cache_hits,
  sum(ProfileEvents['MarkCacheMisses']) AS total_mark_cache_misses,
  if(total_mark_cache_hits + total_mark_cache_misses > 0,
     total_mark_cache_hits / (total_mark_cache_hits + total_mark_cache_misses),
     0) AS mark_cache_hit_rate,

  avg(length(thread_ids)) AS avg_thread_count,
  max(length(thread_ids)) AS max_thread_count,

  if(avg(query_duration_ms) > 0,
     avg(read_rows) / (avg(query_duration_ms) / 1000),
     0) AS avg_rows_per_second,

  if(avg(query_duration_ms) > 0,
     avg(read_bytes) / (avg(query_duration_ms) / 1000),
     0) AS avg_bytes_per_second,

  if(avg(ProfileEvents['UserTimeMicroseconds'] + ProfileEvents['SystemTimeMicroseconds'] + ProfileEvents['OSCPUWaitMicroseconds']) > 0,
     avg(ProfileEvents['OSCPUWaitMicroseconds']) / avg(ProfileEvents['UserTimeMicroseconds'] + ProfileEvents['SystemTimeMicroseconds'] + ProfileEvents['OSCPUWaitMicroseconds']),
     0) AS io_wait_ratio,

  if(avg(read_rows) > 0, avg(memory_usage) / avg(read_rows), 0) AS avg_memory_per_row,
  if(avg(read_rows) > 0, avg(result_rows) / avg(read_rows), 0) AS result_efficiency,

  groupArray(5)(tables) AS sample_tables,
  any(query_kind) AS query_kind,

  min(event_time) AS first_seen,
  max(event_time) AS last_seen,

  groupArray(3)(exception) AS sample_exceptions

FROM {table}
WHERE event_date >= today() - INTERVAL {days} DAY
  AND type = 'QueryFinish'
  AND query NOT LIKE '%system.query_log%'
  AND is_initial_query = 1
  AND normalized_query_hash != 0
GROUP BY normalized_query_hash
HAVING execution_count >= {min_executions}
ORDER BY {sort_column} DESC
LIMIT {limit} OFFSET {offset}
"""

QUERY_DRILLDOWN = """
SELECT
  query_id,
  query,
  user,
  query_duration_ms,
  memory_usage,
  peak_memory_usage,
  read_rows,
  read_bytes,
  written_rows,
  written_bytes,
  result_rows,
  result_bytes,
  event_time,
  exception,

  ProfileEvents['UserTimeMicroseconds'] / 1000000 AS cpu_user_seconds,
  ProfileEvents['SystemTimeMicroseconds'] / 1000000 AS cpu_system_seconds,
  ProfileEvents['OSCPUWaitMicroseconds'] / 1000000 AS cpu_wait_seconds,
  ProfileEvents['OSReadBytes'] AS io_read_bytes,
  ProfileEvents['OSWriteBytes'] AS io_write_bytes,
  ProfileEvents['NetworkSendBytes'] AS network_send_bytes,
  ProfileEvents['NetworkReceiveBytes'] AS network_receive_bytes,
  ProfileEvents['DiskCacheHits'] AS disk_cache_hits,
  ProfileEvents['DiskCacheMisses'] AS disk_cache_misses,

  tables

FROM {table}
WHERE normalized_query_hash = {hash}
  AND event_date >= today() - INTERVAL {days} DAY
  AND type = 'QueryFinish'
ORDER BY {sort_column} DESC
LIMIT {limit} OFFSET {offset}
"""

SLOW_QUERIES = """
SELECT
  query_id,
  normalized_query_hash AS query_pattern,
  query,
  user,
  query_duration_ms,
  memory_usage,
  read_rows,
  read_bytes,
  event_time,
  exception,
  tables
FROM {table}
WHERE event_date >= today() - INTERVAL {days} DAY
  AND type = 'QueryFinish'
  AND query_duration_ms > {threshold_ms}
  AND query NOT LIKE '%system.query_log%'
ORDER BY query_duration_ms DESC
LIMIT {limit}
"""

AGGREGATE_SORT_COLUMNS = frozenset({
    "execution_count", "error_count",
    "avg_duration_ms", "p50_duration_ms", "p90_duration_ms", "p95_duration_ms",
    "p99_duration_ms", "max_duration_ms", "total_duration_ms",
    "avg_memory_bytes", "max_memory_bytes", "p90_memory_bytes", "p99_memory_bytes",
    "total_read_bytes", "avg_read_bytes", "total_written_rows",
    "total_cpu_user_seconds", "avg_cpu_user_seconds", "avg_cpu_wait_seconds",
    "last_seen", "first_seen",
})

DRILLDOWN_SORT_COLUMNS = frozenset({
    "query_duration_ms", "memory_usage", "peak_memory_usage", "read_rows",
    "read_bytes", "written_rows", "result_rows", "event_time",
})

# ============================================
# MATERIALIZED VIEWS & LINEAGE
# ============================================

GET_MATERIALIZED_VIEWS = """
SELECT
  database,
  name,
  engine,
  total_rows,
  total_bytes,
  create_table_query,
  as_select AS select_query,
  dependencies_database,
  dependencies_table
FROM system.tables
WHERE engine IN ('MaterializedView')
  AND database NOT IN ('system', 'information_schema', 'INFORMATION_SCHEMA')
ORDER BY database, name
"""

GET_TABLE_DEPENDENCIES = """
SELECT
  database,
  table,
  dependent_database,
  dependent_table
FROM system.dependencies
WHERE database = '{database}'
  OR dependent_database = '{database}'
ORDER BY database, table
"""

GET_ALL_DEPENDENCIES = """
SELECT
  database,
  table,
  dependent_database,
  dependent_table
FROM system.dependencies
ORDER BY database, table
"""

GET_LINEAGE_OBJECTS = """
SELECT
  database,
  name,
  engine,
  create_table_query,
  dependencies_database,
  dependencies_table
FROM system.tables
WHERE database NOT IN ('system', 'information_schema', 'INFORMATION_SCHEMA')
  {database_filter}
ORDER BY database, name
"""
