from __future__ import annotations

from syncbridge.integrations.services.bookingpal import BookingpalListingPhotoV1, BookingpalListingV1
from syncbridge.integrations.services.fake import (
    FakeDependentDependentV1,
    FakeDependentV1,
    FakeV1,
    FakeWithEnrichmentsV1,
)
from syncbridge.integrations.services.increase import IncreaseTransactionV1
from syncbridge.integrations.services.shopify import ShopifyOrderV1
from syncbridge.integrations.services.theranest import TheranestAuthV1, TheranestClientV1
from syncbridge.integrations.services.transistor import TransistorEpisodeV1

ALL_INTEGRATIONS = (
    FakeV1,
    FakeWithEnrichmentsV1,
    FakeDependentV1,
    FakeDependentDependentV1,
    BookingpalListingV1,
    BookingpalListingPhotoV1,
    IncreaseTransactionV1,
    ShopifyOrderV1,
    TheranestAuthV1,
    TheranestClientV1,
    TransistorEpisodeV1,
)

__all__ = [integration.__name__ for integration in ALL_INTEGRATIONS] + ["ALL_INTEGRATIONS"]
