# feedkeeper

feedkeeper reads RSS, RDF and Atom feeds on a schedule. It turns each entry into
a labelled `Feed` record and skips entries that are already stored. It also
provides the logic of time-partitioned storage blocks that can be queried by
label, by semantic similarity and by time range.

The only runtime dependency is `defusedxml`, which is used to parse feed
documents safely. The `test` extra adds `pytest`.

## Modules

### `feedkeeper.feed`

- `Label`: a frozen key/value pair.
- `Labels`: a list of `Label`.
  - `get(key)` returns the first matching value, or `""` if there is none.
  - `Labels.from_mapping(mapping)` builds labels sorted by key.
  - `ensure_sorted()` sorts the labels by key in place, and the sort is stable.
- `Feed`: holds `labels`, `time` and a 64-bit `id`.
- `Reader`: the protocol for sources. It has one method, `read()`, which
  returns a list of `Feed`.

### `feedkeeper.rss`

- `RSSSource` describes a feed with a `url`, or with an `rsshub_endpoint` and an
  `rsshub_route_path`. `validate()` fills in `url` from the RSSHub settings when
  it is empty. It raises `ValueError` when both the URL and the endpoint are
  empty, or when the URL does not start with `http://` or `https://`.
- `parse_feed(data)` parses an RSS 2.0, RDF or Atom document into a
  `ParsedFeed` of `FeedItem`s. Each item has a title, link, description, content
  and publication time.
- `html_to_markdown(html)` converts an HTML fragment to Markdown. It handles
  headings, emphasis, links, images, lists, code and block quotes.
- `HTTPFeedClient(url).get()` downloads the document with `urllib` and parses it.
  It raises `FetchError` on failure.
- `RSSReader.read()` turns each item into a `Feed` with these labels:
  - `type`, set to `rss`
  - `title`
  - `link`
  - `pub_time`, as RFC 3339 in local time; the current time is used when the
    item has none
  - `content`, made from the description and content joined by a blank line
    and converted to Markdown

  The feed's `time` is the moment of reading.
- `new_rss_reader(config)` validates the source and returns an `RSSReader`.

```python
from feedkeeper.rss import RSSSource, new_rss_reader

reader = new_rss_reader(RSSSource(url="https://example.com/feed.xml"))
for feed in reader.read():
    print(feed.labels.get("title"), feed.labels.get("link"))
```

```python
source = RSSSource(rsshub_endpoint="http://localhost:1200/", rsshub_route_path="/github/issue/owner/repo")
source.validate()
print(source.url)  # http://localhost:1200/github/issue/owner/repo
```

### `feedkeeper.scraper`

`ScraperConfig` holds a `name`, a look-back window `past`, an `interval`, extra
`labels` and an `rss` source. `validate()` applies these defaults and limits:

- `past` defaults to one day and is capped at 15 days.
- `interval` defaults to one hour and is at least 10 minutes.
- A missing name raises `ValueError`.

`new_scraper(instance, config, dependencies)` builds a `Scraper`. The
`dependencies` argument is a `ScraperDependencies` holding a `FeedStorage` and a
`KVStorage`.

`Scraper.scrape_once()` reads the source and then:

1. Drops entries whose `pub_time` lies outside the look-back window.
2. Adds the configured labels and a `source` label.
3. Sets each entry's id to `feed_id(source, link)`.
4. Skips entries that the key/value store and `FeedStorage.exists` report as
   already stored.

It appends what is left to the feed storage and returns those entries.

`Scraper.run()` waits a random offset of up to one minute, then scrapes every
interval until `close()` is called. After a failure it retries with a wait that
starts at 1 minute and doubles each time, up to 16 minutes.

### `feedkeeper.manager`

`ScrapeSettings` holds the global settings and a list of `SourceSettings`:

- global: `past`, `interval` and `rsshub_endpoint`
- per source: `name`, `interval`, `labels` and an optional `RSSSettings`

`ManagerConfig.from_settings` turns these settings into one `ScraperConfig` per
source. A source whose interval is unset inherits the global one.
`ManagerConfig.validate()` requires the scraper names to be unique.

`new_manager(instance, settings, dependencies)` creates one scraper per source.
`Manager.run()` starts every scraper in its own thread and blocks until
`close()`.

`Manager.reload(settings)` applies changed settings:

- Scrapers whose configuration is unchanged are kept.
- Scrapers whose configuration changed are closed and recreated.
- Scrapers that were removed from the settings are stopped.

### `feedkeeper.blockconfig`

- `BlockConfig.validate()` fills in a block's time span and embedding model. It
  takes them either from `ForCreateConfig` or from `metadata.json` in the block
  directory.
  - The duration defaults to 25 hours and must lie between 1 and 15 days.
  - The flush interval defaults to 200 ms.
- `Metadata` and `ArchiveMetadata` encode the JSON files stored in a block
  directory.
- `State` is either `HOT` or `COLD`.
- `chunk_filename` and `parse_chunk_filename` map chunk ids to file names and
  back.

### `feedkeeper.query`

- `QueryOptions` holds a semantic `query`, a `threshold`, `label_filters` and a
  `limit`. Filters are written as `key=value` or `key!=value`.
  - The threshold defaults to 0.55.
  - The limit defaults to 10, and a limit over 500 is rejected.
  - The time range runs from `start` to `end`; if unset, it covers the last
    24 hours.
- `LabelFilter.parse` and `LabelFilter.matches` handle single filters.
- `FeedVOHeap` keeps the best `limit` results, ranked by score and then by time.
- `intersect_label_results` and `merge_filter_results` combine filter results.

### `feedkeeper.block`

`new_block(instance, config, dependencies)` sets up a block in one of two ways.
With `for_create` set, it creates the block directory, `metadata.json` and the
first chunk. Without it, it loads an existing block from disk: a hot block is
loaded at once, and a cold block is loaded on its first read.

`Block` methods:

- `append(*feeds)` embeds the feeds and queues them for writing.
- `flush()` writes queued feeds into the head chunk and the indexes. A new chunk
  is started once the head chunk would pass 5000 feeds.
- `query(options)` returns `FeedVO`s, best first.
- `exists(feed_id)` checks the primary index.
- `transform_to_cold()` writes the indexes and `archive.json`, and frees memory.
- `reconcile_state(now)` frees a loaded cold block that has not been read for
  30 minutes.
- `clear_on_disk()` removes the block directory.

## What the package does not include

- There is no command-line program and no configuration-file loader. You build
  `ScrapeSettings` and the other settings objects in code.
- `FeedStorage` and `KVStorage` are protocols only. You supply the feed store
  and the key/value store the scrapers write to.
- The block storage has no chunk file format, no primary, inverted or vector
  index, and no embedding client. `BlockDependencies` expects you to supply
  factories for all of these, following the protocols in `feedkeeper.block`.
- There is nothing that manages a chain of blocks over time.