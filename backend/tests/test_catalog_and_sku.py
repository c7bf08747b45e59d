"""
Catalog lifecycle, outlets and marketplace SKU mapping.
"""

import pytest

from stockledger.errors import ConflictError, InvalidTransition, NotFound, ProductInactive, ValidationError
from stockledger.models import LifecycleState
from stockledger.services import catalog_service, outlet_service, sku_service


# =============================================================================
# CATALOG
# =============================================================================


class TestCatalog:

    def test_sku_is_unique(self, db_session, product, variant_m):
        with pytest.raises(ConflictError):
            catalog_service.create_variant(product_id=product.id, sku="KP-BLK-M", size="M")

    def test_sellable_needs_product_and_variant_active(self, db_session, product, variant_m):
        assert catalog_service.require_sellable_variants([variant_m.id])

        catalog_service.set_product_lifecycle(product.id, LifecycleState.DEACTIVATED)
        with pytest.raises(ProductInactive):
            catalog_service.require_sellable_variants([variant_m.id])

        # still usable for stock-in and counts
        assert catalog_service.require_variants([variant_m.id])

    def test_deleted_is_terminal(self, db_session, variant_m):
        catalog_service.set_variant_lifecycle(variant_m.id, LifecycleState.DELETED)

        with pytest.raises(InvalidTransition):
            catalog_service.set_variant_lifecycle(variant_m.id, LifecycleState.ACTIVE)

    def test_list_variants_hides_inactive(self, db_session, product, variant_m, variant_l):
        catalog_service.set_variant_lifecycle(variant_l.id, LifecycleState.DEACTIVATED)

        assert [v.id for v in catalog_service.list_variants()] == [variant_m.id]
        assert {v.id for v in catalog_service.list_variants(include_inactive=True)} == {variant_m.id, variant_l.id}

    def test_negative_price_rejected(self, db_session, product):
        with pytest.raises(ValidationError):
            catalog_service.create_variant(product_id=product.id, sku="NEG", price=-1)

    def test_text_fields_are_trimmed(self, db_session, product):
        variant = catalog_service.create_variant(product_id=product.id, sku="  KP-WHT-S ", size=" S ", color="   ")

        assert variant.sku == "KP-WHT-S"
        assert variant.size == "S"
        assert variant.color is None

    @pytest.mark.parametrize("name", [None, "", "   "])
    def test_product_name_required(self, db_session, name):
        with pytest.raises(ValidationError) as exc_info:
            catalog_service.create_product(name=name)
        assert exc_info.value.message == "name is required"


class TestOutlets:

    def test_default_warehouse_is_earliest_active(self, db_session):
        first = outlet_service.create_outlet(name="Gudang Utama")
        outlet_service.create_outlet(name="Gudang Cadangan")

        assert outlet_service.resolve_outlet(None).id == first.id

        outlet_service.set_outlet_lifecycle(first.id, LifecycleState.DEACTIVATED)
        assert outlet_service.resolve_outlet(None).name == "Gudang Cadangan"

    def test_rename_rejects_blank(self, db_session, warehouse):
        with pytest.raises(ValidationError):
            outlet_service.update_outlet(warehouse.id, name="   ")

        renamed = outlet_service.update_outlet(warehouse.id, name=" Gudang Pusat ")
        assert renamed.name == "Gudang Pusat"

    def test_invalid_type(self, db_session):
        with pytest.raises(ValidationError):
            outlet_service.create_outlet(name="Pop-up", outlet_type="KIOSK")

    def test_unknown_outlet(self, db_session):
        with pytest.raises(NotFound):
            outlet_service.resolve_outlet(31337)


# =============================================================================
# SKU MAPPING
# =============================================================================


class TestSkuMapping:

    def test_resolution_is_channel_scoped_and_trimmed(self, db_session, variant_m, map_sku):
        map_sku("SHOPEE", "SP-M", variant_m)

        assert sku_service.resolve_sku("shopee", "  SP-M ") == variant_m.id
        assert sku_service.resolve_sku("TIKTOK", "SP-M") is None
        assert sku_service.resolve_sku("SHOPEE", "") is None

    def test_batch_resolution_keeps_first_seen_order(self, db_session, variant_m, map_sku):
        map_sku("SHOPEE", "B", variant_m)

        resolution = sku_service.resolve_skus("SHOPEE", ["C", "B", "A", "C", " "])

        assert resolution.mapped == {"B": variant_m.id}
        assert resolution.missing == ["C", "A"]
        assert not resolution.complete

    def test_upsert_repoints(self, db_session, variant_m, variant_l):
        mapping, created = sku_service.upsert_mapping(channel="TIKTOK", external_sku_id="TT-1", variant_id=variant_m.id)
        assert created is True

        again, created = sku_service.upsert_mapping(channel="tiktok", external_sku_id="TT-1", variant_id=variant_l.id)

        assert created is False
        assert again.id == mapping.id
        assert sku_service.resolve_sku("TIKTOK", "TT-1") == variant_l.id

    def test_cannot_map_to_deleted_variant(self, db_session, variant_m):
        catalog_service.set_variant_lifecycle(variant_m.id, LifecycleState.DELETED)

        with pytest.raises(ProductInactive):
            sku_service.upsert_mapping(channel="SHOPEE", external_sku_id="X", variant_id=variant_m.id)

    def test_delete_mapping(self, db_session, variant_m, map_sku):
        mapping_id = map_sku("SHOPEE", "SP-M", variant_m).id

        sku_service.delete_mapping(mapping_id)

        assert sku_service.resolve_sku("SHOPEE", "SP-M") is None
        with pytest.raises(NotFound):
            sku_service.delete_mapping(mapping_id)
