"""
Tests for the chunked page record store.
"""

import gzip
import json

import pytest

from site_audit.storage.page_store import ChunkedPageStore, PageRecord, StorageError


def record(n: int, **kwargs) -> PageRecord:
    return PageRecord(url=f'https://example.com/{n}', status_code=200, response_time_ms=12.5,
                      size=100 + n, analysis={'meta': {'title': f'Page {n}'}}, **kwargs)


def test_records_spill_when_chunk_is_full(tmp_path):
    store = ChunkedPageStore(tmp_path, chunk_max_records=2)

    for n in range(5):
        assert store.put(record(n))

    manifest = store.manifest()
    assert [chunk['records'] for chunk in manifest['chunks']] == [2, 2]
    assert [chunk['file'] for chunk in manifest['chunks']] == ['chunk-00000.jsonl.gz', 'chunk-00001.jsonl.gz']
    assert manifest['index']['https://example.com/3'] == 1
    assert len(store.working) == 1
    assert len(store) == 5

    chunk_file = tmp_path / 'page-data' / 'chunk-00000.jsonl.gz'
    with gzip.open(chunk_file, 'rt', encoding='utf-8') as f:
        lines = [json.loads(line) for line in f]
    assert [line['url'] for line in lines] == ['https://example.com/0', 'https://example.com/1']


def test_byte_bound_triggers_spill(tmp_path):
    store = ChunkedPageStore(tmp_path, chunk_max_records=100, chunk_max_bytes=200)

    store.put(record(1, headers={'x-padding': 'p' * 300}))

    assert len(store.chunks) == 1
    assert store.working_bytes == 0


def test_get_reads_through_spilled_chunks(tmp_path):
    store = ChunkedPageStore(tmp_path, chunk_max_records=2)
    for n in range(3):
        store.put(record(n))

    assert store.get('https://example.com/0') == record(0, timestamp=store.get('https://example.com/0').timestamp)
    assert store.get('https://example.com/2').size == 102
    assert store.get('https://example.com/missing') is None
    assert 'https://example.com/1' in store
    assert [r.url for r in store] == [f'https://example.com/{n}' for n in range(3)]


def test_put_refuses_second_record_for_url(tmp_path):
    store = ChunkedPageStore(tmp_path, chunk_max_records=1)
    first = record(1)

    assert store.put(first)
    assert not store.put(record(1, truncated=True))
    assert len(store) == 1
    assert not store.get(first.url).truncated


def test_records_are_immutable():
    with pytest.raises(AttributeError):
        record(1).status_code = 500


def test_restore_migrates_working_file_and_legacy_data(tmp_path):
    store = ChunkedPageStore(tmp_path, chunk_max_records=2)
    for n in range(3):
        store.put(record(n))
    store.persist_working()
    manifest = store.manifest()

    restored = ChunkedPageStore(tmp_path, chunk_max_records=2)
    migrated = restored.restore(manifest, legacy_page_data={
        'https://example.com/legacy': {'statusCode': 200, 'responseTime': 40, 'size': 9},
        'https://example.com/0': {'statusCode': 200},
    })

    assert migrated == 2
    assert len(restored) == 4
    assert restored.get('https://example.com/2').size == 102
    assert restored.get('https://example.com/legacy').response_time_ms == 40
    assert restored.get('https://example.com/0').size == 100


def test_restore_with_missing_chunk_fails(tmp_path):
    store = ChunkedPageStore(tmp_path, chunk_max_records=1)
    store.put(record(1))
    manifest = store.manifest()
    (tmp_path / 'page-data' / 'chunk-00000.jsonl.gz').unlink()

    with pytest.raises(StorageError):
        ChunkedPageStore(tmp_path).restore(manifest)


def test_spill_failure_raises_storage_error(tmp_path):
    blocked = tmp_path / 'blocked'
    blocked.write_text('not a directory')
    store = ChunkedPageStore(blocked, chunk_max_records=1)

    with pytest.raises(StorageError):
        store.put(record(1))


def test_reset_removes_chunk_files(tmp_path):
    store = ChunkedPageStore(tmp_path, chunk_max_records=1)
    store.put(record(1))
    store.persist_working()

    store.reset()

    assert len(store) == 0
    assert not list((tmp_path / 'page-data').glob('*.jsonl.gz'))
