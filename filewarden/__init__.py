"""Filewarden keeps a directory of uploaded files and a metadata store in
   agreement while many workers upload and delete files concurrently.

   ---------------------
   Files, ids and leases
   ---------------------

   A file is stored under its name, which is a single path component.
   Each logical file has a metadata record with an opaque ``file_id``, its
   name, the SHA256 checksum of its content, a creation date and a status.
   Uploading the same content under the same name twice returns the id
   of the first upload.

   Every mutation of a file happens under a lease on the file's name,
   granted by a :class:`filewarden.locks.LockService`. Leases expire, so a
   crashed worker never blocks a file forever, and carry fencing tokens.

   Every mutation also bumps a per-file version counter, see
   :class:`filewarden.versions.VersionCounter`.

   -----------------------
   Configuration and usage
   -----------------------

   The class you'd like to know is :class:`filewarden.service.FileService`.
   It is assembled from a storage, a metadata store, a lock manager and a
   version counter; :func:`filewarden.servers.run.make_file_service` builds
   the default, multiprocess-safe set.

   .. autoclass:: filewarden.service.FileService
       :members:

   For tests, :mod:`filewarden.store.memory` and
   :mod:`filewarden.locks.memory` provide in-memory collaborators.

   -----------------
   Filewarden server
   -----------------

   To share the storage over HTTP, run::

     $ filewarden-server --help

   and talk to it with :class:`filewarden.client.RemoteClient` or from the
   shell::

     $ filewarden --help

   --------------
   Reconciliation
   --------------

   The storage directory is the source of truth. Files put there (or
   removed) behind the server's back are picked up by a reconciliation
   pass, run by the server at startup, periodically if configured, on
   ``POST /reconcile/`` and by::

     $ filewarden-reconcile --help

   .. autoclass:: filewarden.reconcile.Reconciler
       :members:

   -------------
   API Reference
   -------------

   .. autoclass:: filewarden.store.MetadataStore
       :members:

   .. autoclass:: filewarden.locks.LockService
       :members:

   .. autoclass:: filewarden.workers.WorkerPool
       :members:
"""
