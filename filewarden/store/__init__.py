"""Metadata stores mapping file ids to file records."""

# Reexport under shorter path.
from filewarden.store.metadata_store import (FileRecord, MetadataStore,
                                             STATUS_DELETE_PENDING,
                                             STATUS_UPLOADED, new_file_id)
