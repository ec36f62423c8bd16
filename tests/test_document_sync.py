import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from conftest import make_products
from store_agent.services.document_sync import DocumentSyncer, load_sources
from store_agent.services.renderers import render_record
from store_agent.utils.errors import SyncError, UpstreamError, ValidationError


def _upserted_ids(index):
    return [document.id for call in index.upsert_documents.await_args_list for document in call.args[0]]


class RecordingIndex:
    """Index double that keeps the sync run of every entry and yields between writes."""

    def __init__(self):
        self.entries = {}

    async def upsert_documents(self, documents, sync_run=None):
        await asyncio.sleep(0)
        for document in documents:
            self.entries[document.id] = (document.entity_type, sync_run)
        return len(documents)

    async def delete_stale(self, entity_type, sync_run):
        await asyncio.sleep(0)
        stale = [key for key, (stored_type, stored_run) in self.entries.items() if stored_type == entity_type and stored_run != sync_run]
        for key in stale:
            del self.entries[key]
        return len(stale)

    def count(self, entity_type):
        return sum(1 for stored_type, _ in self.entries.values() if stored_type == entity_type)


class TestDocumentSyncer:

    @pytest.fixture
    def source(self, products):
        return AsyncMock(return_value=products)

    @pytest.fixture
    def syncer(self, fake_index, source, app_config):
        return DocumentSyncer(fake_index, {'products': source}, app_config)

    def test_unknown_source_rejected(self, fake_index, app_config):
        with pytest.raises(ValueError):
            DocumentSyncer(fake_index, {'widgets': AsyncMock(return_value=[])}, app_config)

    def test_system_features_source_added(self, syncer):
        assert syncer.entity_types == ['products', 'system_features']

    @pytest.mark.asyncio
    async def test_sync_entity_type_writes_batches(self, syncer, fake_index):
        result = await syncer.sync_entity_type('products')

        assert result.documents_upserted == 5
        assert result.errors == []
        assert fake_index.upsert_documents.await_count == 3
        assert _upserted_ids(fake_index) == [f'products_{number}' for number in range(1, 6)]

    @pytest.mark.asyncio
    async def test_resync_reuses_document_ids(self, syncer, fake_index):
        await syncer.sync_entity_type('products')
        first_ids = _upserted_ids(fake_index)
        fake_index.upsert_documents.reset_mock()

        await syncer.sync_entity_type('products', force=True)

        assert _upserted_ids(fake_index) == first_ids

    @pytest.mark.asyncio
    async def test_empty_source_does_not_touch_index(self, fake_index, app_config):
        syncer = DocumentSyncer(fake_index, {'products': AsyncMock(return_value=[])}, app_config)

        result = await syncer.sync_entity_type('products')

        assert result.documents_upserted == 0
        assert result.errors == []
        fake_index.upsert_documents.assert_not_awaited()
        fake_index.delete_stale.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_batch_does_not_stop_remaining_batches(self, syncer, fake_index):
        calls = []

        async def upsert(documents, sync_run=None):
            calls.append(len(documents))
            if len(calls) == 2:
                raise UpstreamError('Vector index write failed')
            return len(documents)

        fake_index.upsert_documents = AsyncMock(side_effect=upsert)

        result = await syncer.sync_entity_type('products')

        assert calls == [2, 2, 1]
        assert result.documents_upserted == 3
        assert len(result.errors) == 1
        fake_index.delete_stale.assert_not_awaited()

        status = syncer.get_sync_status('products')
        assert status.checksum == ''
        assert status.last_error

    @pytest.mark.asyncio
    async def test_error_free_pass_prunes_previous_runs(self, syncer, fake_index):
        await syncer.sync_entity_type('products')

        sync_run = fake_index.upsert_documents.await_args.kwargs['sync_run']
        fake_index.delete_stale.assert_awaited_once_with('products', sync_run)

    @pytest.mark.asyncio
    async def test_unchanged_records_are_skipped(self, syncer, fake_index):
        await syncer.sync_entity_type('products')
        fake_index.upsert_documents.reset_mock()

        skipped = await syncer.sync_entity_type('products')
        forced = await syncer.sync_entity_type('products', force=True)

        assert skipped.skipped is True
        assert forced.skipped is False
        assert fake_index.upsert_documents.await_count == 3

    @pytest.mark.asyncio
    async def test_render_failure_is_isolated_to_the_record(self, fake_index, app_config):
        records = make_products(3)
        records[1]['category'] = 42
        source = AsyncMock(return_value=records)
        syncer = DocumentSyncer(fake_index, {'products': source}, app_config)

        result = await syncer.sync_entity_type('products')

        assert result.documents_upserted == 2
        assert len(result.errors) == 1
        fake_index.delete_stale.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_entity_type(self, syncer):
        with pytest.raises(ValidationError):
            await syncer.sync_entity_type('widgets')

    @pytest.mark.asyncio
    async def test_sync_with_retry_recovers(self, fake_index, app_config, products):
        source = AsyncMock(side_effect=[RuntimeError('database unavailable'), products])
        syncer = DocumentSyncer(fake_index, {'products': source}, app_config)

        result = await syncer.sync_with_retry('products', max_attempts=3, backoff=0)

        assert result.documents_upserted == 5
        assert source.await_count == 2

    @pytest.mark.asyncio
    async def test_sync_with_retry_exhausted(self, fake_index, app_config):
        source = AsyncMock(side_effect=RuntimeError('database unavailable'))
        syncer = DocumentSyncer(fake_index, {'products': source}, app_config)

        with pytest.raises(SyncError) as exc_info:
            await syncer.sync_with_retry('products', max_attempts=2, backoff=0)

        assert source.await_count == 2
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert 'database unavailable' in syncer.get_sync_status('products').last_error

    @pytest.mark.asyncio
    async def test_sync_all_data_isolates_entity_failures(self, fake_index, app_config):
        sources = {
            'products': AsyncMock(side_effect=RuntimeError('inventory service down')),
            'clients': AsyncMock(return_value=[{'id': 1, 'name': 'Acme', 'credit_limit': 6000}])
        }
        syncer = DocumentSyncer(fake_index, sources, app_config)

        report = await syncer.sync_all_data()

        assert set(report.failed) == {'products'}
        assert 'inventory service down' in report.failed['products']
        assert report.results['clients'].documents_upserted == 1
        assert report.results['system_features'].documents_upserted == 5
        assert report.total_synced == 6

    @pytest.mark.asyncio
    async def test_overlapping_run_is_skipped(self, fake_index, app_config, products):
        release = asyncio.Event()

        async def slow_source():
            await release.wait()
            return products

        syncer = DocumentSyncer(fake_index, {'products': slow_source}, app_config)

        first = asyncio.create_task(syncer.sync_all_data())
        await asyncio.sleep(0)
        assert syncer.is_running

        second = await syncer.sync_all_data()
        release.set()
        report = await first

        assert second is None
        assert report is not None
        assert not syncer.is_running

    @pytest.mark.asyncio
    async def test_force_full_sync_clears_checksums(self, syncer, fake_index):
        await syncer.sync_all_data()
        fake_index.upsert_documents.reset_mock()

        report = await syncer.force_full_sync()

        assert report.total_skipped == 0
        assert fake_index.upsert_documents.await_count > 0

    def test_document_id_is_entity_type_and_id(self):
        document = render_record('products', make_products(1)[0])

        assert document.id == 'products_1'
        assert document.metadata['entity_type'] == 'products'
        assert document.metadata['entity_id'] == '1'
        assert document.metadata['timestamp']

    def test_checksum_ignores_record_order(self, products):
        assert DocumentSyncer.calculate_checksum(products) == DocumentSyncer.calculate_checksum(list(reversed(products)))


class TestConcurrentSyncs:

    @pytest.fixture
    def index(self):
        return RecordingIndex()

    @staticmethod
    def _slow_source(records):

        async def source():
            await asyncio.sleep(0)
            return records

        return source

    @pytest.mark.asyncio
    async def test_single_type_sync_during_full_pass_keeps_entries(self, index, app_config):
        syncer = DocumentSyncer(index, {'products': self._slow_source(make_products(4))}, app_config)

        await asyncio.gather(syncer.sync_all_data(), syncer.force_full_sync('products'))
        assert index.count('products') == 4

        report = await syncer.sync_all_data()

        assert report.results['products'].skipped is True
        assert index.count('products') == 4

    @pytest.mark.asyncio
    async def test_concurrent_retries_of_one_type_keep_entries(self, index, app_config):
        syncer = DocumentSyncer(index, {'products': self._slow_source(make_products(4))}, app_config)

        await asyncio.gather(syncer.sync_with_retry('products', force=True), syncer.sync_with_retry('products', force=True))

        runs = {sync_run for entity_type, sync_run in index.entries.values() if entity_type == 'products'}
        assert index.count('products') == 4
        assert len(runs) == 1

    @pytest.mark.asyncio
    async def test_forced_full_sync_skipped_while_running_keeps_checksums(self, index, app_config, products):
        release = asyncio.Event()
        syncer = DocumentSyncer(index, {'products': self._slow_source(products)}, app_config)
        await syncer.sync_all_data()
        checksum = syncer.get_sync_status('products').checksum

        async def gated_source():
            await release.wait()
            return products

        syncer.sources['products'] = gated_source
        running = asyncio.create_task(syncer.sync_all_data())
        await asyncio.sleep(0)

        skipped = await syncer.force_full_sync()
        release.set()
        await running

        assert skipped is None
        assert syncer.get_sync_status('products').checksum == checksum


class TestLoadSources:

    def test_empty_path_has_no_sources(self):
        assert load_sources('') == {}

    @pytest.mark.asyncio
    async def test_factory_is_called(self):
        sources = load_sources('conftest:product_sources')

        assert list(sources) == ['products']
        assert len(await sources['products']()) == 3

    @pytest.mark.parametrize('path', ['conftest', 'conftest:missing_factory', 'no_such_module_xyz:factory'])
    def test_invalid_path(self, path):
        with pytest.raises(ValueError):
            load_sources(path)

    def test_factory_must_return_mapping(self):
        with patch('conftest.product_sources', return_value=['products']):
            with pytest.raises(ValueError):
                load_sources('conftest:product_sources')
