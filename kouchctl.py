"""CouchDB administration tool and one-shot replication library in a single module.

Provides a CouchDB HTTP client, a retry controller with backoff, and a
pull replication engine compatible with the CouchDB replication protocol.
Also a command line tool, `kouchctl`.

Relies on 'requests': http://docs.python-requests.org/en/master/
and, for the command line tool, on 'PyYAML' and 'Jinja2'.
"""

__version__ = "0.4.0"

# Standard packages
import argparse
import collections
import datetime
import json
import logging
import math
import os
import os.path
import random
import re
import sys
import threading
import time
import urllib.parse
import uuid

# Third-party package: https://docs.python-requests.org/en/master/
import requests

# Third-party packages: output formats and the configuration file.
import jinja2
import yaml

JSON_MIME = "application/json"
CHUNK_SIZE = 100
MANIFEST_MAX_BYTES = 1024 * 1024

SCHEMES = {"http": "http",
           "https": "https",
           "couch": "http",
           "couchs": "https",
           "couchdb": "http",
           "couchdbs": "https"}

# Exit codes, following sysexits(3).
ErrUsage = 64
ErrData = 65
ErrNotFound = 66
ErrUnauthenticated = 67
ErrUnavailable = 69
ErrConflict = 73
ErrIO = 74
ErrUnauthorized = 77

logger = logging.getLogger("kouchctl")


class Context:
    """Cancellation token threaded through requests, retries and replication.

    A context is done when `cancel()` has been called on it or on its
    parent, or when its deadline has passed. The deadline of a child is
    never later than that of its parent.
    """

    def __init__(self, timeout=None, parent=None):
        self.parent = parent
        self.deadline = None
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children = []
        if timeout is not None and timeout > 0:
            self.deadline = time.monotonic() + timeout
        if parent is not None:
            if parent.deadline is not None and \
               (self.deadline is None or parent.deadline < self.deadline):
                self.deadline = parent.deadline
            with parent._lock:
                parent._children.append(self)
            if parent.canceled:
                self._event.set()

    def with_timeout(self, timeout):
        "Returns a child context expiring after `timeout` seconds."
        return Context(timeout=timeout, parent=self)

    def cancel(self):
        "Cancels this context and all its children."
        self._event.set()
        with self._lock:
            children = list(self._children)
        for child in children:
            child.cancel()

    def release(self):
        """Detaches the context from its parent, when no longer in use.
        It no longer follows the cancellation of the parent.
        """
        if self.parent is not None:
            with self.parent._lock:
                if self in self.parent._children:
                    self.parent._children.remove(self)

    @property
    def canceled(self):
        "Has `cancel()` been called on this context or an ancestor?"
        return self._event.is_set()

    @property
    def expired(self):
        "Has the deadline passed?"
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def done(self):
        return self.canceled or self.expired

    def remaining(self):
        "Seconds left until the deadline, or None if there is no deadline."
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self):
        "Raises 'CanceledError' if the context is done."
        if self.canceled:
            raise CanceledError("context canceled")
        if self.expired:
            raise CanceledError("context deadline exceeded")

    def wait(self, seconds):
        """Sleeps for the given number of seconds, waking early if the
        context is canceled. Returns True if it was canceled.
        """
        if seconds > 0:
            self._event.wait(seconds)
        return self.canceled


class Server:
    "An instance of the class is a connection to the CouchDB server."

    def __init__(self, href="http://localhost:5984/",
                 username=None, password=None,
                 request_timeout=None, connect_timeout=None):
        """An instance of the class is a connection to the CouchDB server.

        - `href` is the URL to the CouchDB server itself. The schemes
          `couch` and `couchdb` stand for `http`, `couchs` and `couchdbs`
          for `https`. Any other scheme raises `ConfigError`.
        - `username` and `password` specify the CouchDB user account to use.
          They are sent with each request, using basic authentication.
        - `request_timeout` limits the time, in seconds, waiting for
          each response; `connect_timeout` limits the time spent establishing
          a TCP connection.
        """
        parts = urllib.parse.urlsplit(href)
        try:
            scheme = SCHEMES[parts.scheme.lower()]
        except KeyError:
            raise ConfigError(f"unsupported URL scheme: {parts.scheme}")
        self.href = urllib.parse.urlunsplit(
            (scheme, parts.netloc, parts.path.rstrip("/") + "/", "", ""))
        self.request_timeout = request_timeout or None
        self.connect_timeout = connect_timeout or None
        self._session = requests.Session()
        self._session.headers.update({"Accept": JSON_MIME})
        if username and password:
            self._session.auth = (username, password)

    @property
    def version(self):
        "Returns the version of the CouchDB server software."
        try:
            return self._version
        except AttributeError:
            self._version = self._GET().json()["version"]
            return self._version

    def __str__(self):
        "Returns a simple string representation of the server interface."
        return f"CouchDB {self.href}"

    def __call__(self, context=None):
        "Returns meta information about the instance."
        response = self._GET(context=context)
        return response.json()

    def __del__(self):
        "Clean-up: Close the 'requests' session."
        try:
            self._session.close()
        except AttributeError:
            pass

    def up(self, context=None):
        """Is the server up and running, ready to respond to requests?
        Returns a boolean.
        """
        response = self._GET("_up", context=context,
                             errors={404: None, 500: None, 503: None})
        return response.status_code == 200

    def get(self, name, check=True):
        """Gets the named database. Returns an instance of class `Database`.

        Raises `NotFoundError` if `check` is `True` and the database
        does not exist.
        """
        return Database(self, name, check=check)

    def get_cluster_setup(self, ensure_dbs_exist=None, context=None):
        """Returns the status of the node or cluster.

        `ensure_dbs_exist` is a list system databases to ensure exist on the
        node/cluster. Defaults to `["_users","_replicator"]`.
        """
        if ensure_dbs_exist is None:
            params = {}
        else:
            params = {"ensure_dbs_exist": _jsons(ensure_dbs_exist)}
        response = self._GET("_cluster_setup", params=params, context=context)
        return response.json()

    def set_cluster_setup(self, doc, context=None):
        """Configures a node as a single node, as part of a cluster,
        or finalize a cluster. Returns the server's reply.

        See the CouchDB documentation for the contents of `doc`.
        """
        response = self._POST("_cluster_setup", json=doc, context=context)
        return response.json()

    def set_replicate(self, doc, context=None):
        """Request, configure, or stop, a replication operation
        managed by the server.

        See the CouchDB documentation for the contents of `doc`.
        """
        response = self._POST("_replicate", json=doc, context=context)
        return response.json()

    def _HEAD(self, *segments, **kwargs):
        "HTTP HEAD request to the CouchDB server, and check the response."
        return self._request("HEAD", segments, kwargs)

    def _GET(self, *segments, **kwargs):
        "HTTP GET request to the CouchDB server, and check the response."
        return self._request("GET", segments, kwargs, "headers", "params")

    def _PUT(self, *segments, **kwargs):
        "HTTP PUT request to the CouchDB server, and check the response."
        return self._request("PUT", segments, kwargs,
                             "json", "data", "headers", "params")

    def _POST(self, *segments, **kwargs):
        "HTTP POST request to the CouchDB server, and check the response."
        return self._request("POST", segments, kwargs,
                             "json", "data", "headers", "params")

    def _DELETE(self, *segments, **kwargs):
        """HTTP DELETE request to the CouchDB server, and check the response.
        Pass parameters in the keyword argument 'params'.
        """
        return self._request("DELETE", segments, kwargs, "headers", "params")

    def _request(self, method, segments, kwargs, *keys):
        """Send the request, honouring the context given in the keyword
        argument 'context', and check the response.
        """
        context = kwargs.get("context")
        if context is not None:
            context.check()
        kw = self._kwargs(kwargs, *keys)
        kw["timeout"] = self._timeout(context)
        href = self._href(segments)
        logger.debug("%s %s", method, href)
        try:
            response = self._session.request(method, href, **kw)
        except requests.exceptions.RequestException as error:
            if context is not None and context.done:
                context.check()
            raise NetworkError(str(error))
        self._check(response, errors=kwargs.get("errors", {}))
        return response

    def _timeout(self, context):
        "Return the 'requests' timeout, capped by the context's deadline."
        read = self.request_timeout
        if context is not None:
            remaining = context.remaining()
            if remaining is not None:
                read = remaining if read is None else min(read, remaining)
        if read is None and self.connect_timeout is None:
            return None
        return (self.connect_timeout, read)

    def _href(self, segments):
        "Return the complete URL."
        return self.href + "/".join(segments)

    def _kwargs(self, kwargs, *keys):
        "Return the kwargs for the specified keys."
        result = {}
        for key in keys:
            try:
                result[key] = kwargs[key]
            except KeyError:
                pass
        return result

    def _check(self, response, errors={}):
        "Raise an exception if the response status code indicates an error."
        status = response.status_code
        try:
            error = errors[status]
        except KeyError:
            try:
                error = _ERRORS[status]
            except KeyError:
                if 200 <= status < 300:
                    error = None
                elif status >= 500:
                    error = ServerError
                else:
                    error = PermanentError
        if error is not None:
            raise error(_reason(response), status=status)


class Database:
    "An instance of the class is an interface to a CouchDB database."

    def __init__(self, server, name, check=True):
        self.server = server
        self.name = name
        if check:
            self.check()

    def __str__(self):
        "Returns the name of the CouchDB database."
        return self.name

    def exists(self, context=None):
        "Does the database exist? Return a boolean."
        response = self.server._HEAD(self.name, errors={404: None},
                                     context=context)
        return response.status_code == 200

    def check(self, context=None):
        "Raises 'NotFoundError' if the database does not exist."
        if not self.exists(context=context):
            raise NotFoundError(f"Database '{self}' does not exist.",
                                status=404)

    def create(self, n=3, q=8, partitioned=False, context=None):
        """Creates the database. Raises 'CreationError' if it already exists.

        - `n`: The number of replicas.
        - `q`: The number of shards.
        - `partitioned`: Whether to create a partitioned database.
        """
        self.server._PUT(self.name,
                         params={"n": _jsons(n), "q": _jsons(q),
                                 "partitioned": _jsons(bool(partitioned))},
                         context=context)
        return self

    def destroy(self, context=None):
        "Deletes the database and all its contents."
        response = self.server._DELETE(self.name, context=context)
        return response.json()

    def get_info(self, context=None):
        "Returns a dictionary with information about the database."
        response = self.server._GET(self.name, context=context)
        return response.json()

    def get_security(self, context=None):
        "Returns a dictionary with security information for the database."
        response = self.server._GET(self.name, "_security", context=context)
        return response.json()

    def set_security(self, doc, context=None):
        """Sets the security information for the database.

        See the CouchDB documentation for the contents of `doc`.
        """
        response = self.server._PUT(self.name, "_security", json=doc,
                                    context=context)
        return response.json()

    def compact(self, context=None):
        """Starts compaction of the CouchDB database, rewriting the disk
        database file and removing old revisions of documents.
        Returns the server's reply; compaction continues in the background.
        """
        response = self.server._POST(self.name, "_compact",
                                     headers={"Content-Type": JSON_MIME},
                                     context=context)
        return response.json()

    def get(self, id, default=None, rev=None, revs=False, revs_info=False,
            conflicts=False, attachments=False, context=None, **params):
        """Returns the document with the given identifier,
        or the `default` value if not found.

        - `rev`: Retrieves document of specified revision, if specified.
        - `revs`: Whether to include the revision history in `_revisions`.
        - `revs_info`: Whether to include detailed information for all known
          document revisions.
        - `conflicts`: Whether to include information about conflicts in
          the document in the `_conflicts` attribute.
        - `attachments`: Whether to include attachment content inline.

        Any other keyword arguments are passed as query parameters.
        """
        params = _params(params)
        if rev is not None:
            params["rev"] = rev
        if revs:
            params["revs"] = _jsons(True)
        if revs_info:
            params["revs_info"] = _jsons(True)
        if conflicts:
            params["conflicts"] = _jsons(True)
        if attachments:
            params["attachments"] = _jsons(True)
        response = self.server._GET(self.name, _quote_id(id),
                                    errors={404: None},
                                    params=params,
                                    context=context)
        if response.status_code == 404:
            return default
        return response.json()

    def get_open_revs(self, id, open_revs, revs=True, attachments=True,
                      context=None):
        """Returns an iterator over the leaf documents for the given
        revisions of the document, in one request.

        - `open_revs`: A list of revision identifiers, or `"all"` for
          all leaf revisions.
        - `revs`: Whether to include the revision history in `_revisions`.
        - `attachments`: Whether to include attachment content inline.

        Raises `NotFoundError` if any requested revision does not exist.
        """
        params = {"open_revs": open_revs if open_revs == "all"
                               else _jsons(list(open_revs))}
        if revs:
            params["revs"] = _jsons(True)
        if attachments:
            params["attachments"] = _jsons(True)
        response = self.server._GET(self.name, _quote_id(id),
                                    params=params,
                                    headers={"Accept": JSON_MIME},
                                    context=context)
        return _OpenRevsIterator(id, response.json())

    def put(self, doc, new_edits=True, context=None, **params):
        """Inserts or updates the document.

        If the document is already in the database, the `_rev` item must
        be present in the document, and it will be updated.

        If the document does not contain an item `_id`, it is added
        having a UUID4 hex value. The `_rev` item is also added.

        If `new_edits` is `False`, the `_rev` (and `_revisions`) of the
        document are stored as given, without generating a new revision.
        This is how replication writes documents.

        Returns the revision of the stored document.
        """
        if "_id" not in doc:
            doc["_id"] = uuid.uuid4().hex
        params = _params(params)
        if not new_edits:
            params["new_edits"] = _jsons(False)
        response = self.server._PUT(self.name, _quote_id(doc["_id"]),
                                    json=doc, params=params, context=context)
        rev = response.json().get("rev", doc.get("_rev"))
        doc["_rev"] = rev
        return rev

    def post(self, doc, context=None, **params):
        """Inserts the document, letting the server assign the `_id`
        unless one is given. Returns the server's reply, containing
        the `id` and `rev` of the new document.
        """
        response = self.server._POST(self.name, json=doc,
                                     params=_params(params), context=context)
        return response.json()

    def delete(self, doc, context=None):
        """Deletes the document, which must contain the _id and _rev items.
        Returns the server's reply.
        """
        if "_id" not in doc:
            raise NotFoundError("missing '_id' item in the document")
        if "_rev" not in doc:
            raise RevisionError("missing '_rev' item in the document")
        response = self.server._DELETE(self.name, _quote_id(doc["_id"]),
                                       headers={"If-Match": doc["_rev"]},
                                       context=context)
        return response.json()

    def changes(self, doc_ids=None, conflicts=None, descending=None,
                feed="normal", filter=None, include_docs=None,
                limit=None, since=None, style=None, context=None, **params):
        """Returns the changes feed of the database as one dictionary,
        with items `results`, `last_seq` and `pending`.

        Refer to the CouchDB documentation
        https://docs.couchdb.org/en/stable/api/database/changes.html

        Only `feed="normal"` is supported; use `iter_changes` for
        large databases.
        """
        params = _params(params)
        if conflicts is not None:
            params["conflicts"] = _jsons(conflicts)
        if descending is not None:
            params["descending"] = _jsons(descending)
        if feed is not None:
            params["feed"] = feed
        if include_docs is not None:
            params["include_docs"] = _jsons(include_docs)
        if limit is not None:
            params["limit"] = _jsons(limit)
        if since is not None:
            params["since"] = _seq(since)
        if style is not None:
            params["style"] = style
        return self._changes(params, doc_ids=doc_ids, filter=filter,
                             context=context)

    def iter_changes(self, doc_ids=None, filter=None, since=0,
                     style="all_docs", limit=CHUNK_SIZE, context=None,
                     **params):
        """Returns an iterator over the changes of the database, as `Change`
        tuples in the order of the feed. The feed is fetched lazily, in
        chunks of `limit` changes.

        The iterator is not restartable; close it when done, or use it
        in a `with` statement.
        """
        return _ChangesIterator(self, doc_ids=doc_ids, filter=filter,
                                since=since, style=style, limit=limit,
                                context=context, params=params)

    def revs_diff(self, manifest, context=None):
        """Given a mapping of document identifiers to lists of revisions,
        returns an iterator over `RevsDiff` tuples for the documents having
        revisions missing in this database, in the order of the mapping.
        """
        response = self.server._POST(self.name, "_revs_diff",
                                     json=manifest, context=context)
        data = response.json()
        return (RevsDiff(id, data[id].get("missing", []),
                         data[id].get("possible_ancestors"))
                for id in manifest if data.get(id, {}).get("missing"))

    def _changes(self, params, doc_ids=None, filter=None, context=None):
        "Fetch a part of the changes feed, using POST if doc_ids are given."
        if doc_ids is not None:
            params["filter"] = "_doc_ids"
            response = self.server._POST(self.name, "_changes",
                                         params=params,
                                         json={"doc_ids": list(doc_ids)},
                                         context=context)
        else:
            if filter is not None:
                params["filter"] = filter
            response = self.server._GET(self.name, "_changes",
                                        params=params, context=context)
        return response.json()


Change = collections.namedtuple("Change", ["id", "revs", "seq", "deleted"])

RevsDiff = collections.namedtuple("RevsDiff",
                                  ["id", "missing", "possible_ancestors"])


class _ChangesIterator:
    "Iterator over the changes feed of a database, fetched in chunks."

    def __init__(self, db, doc_ids=None, filter=None, since=0,
                 style="all_docs", limit=CHUNK_SIZE, context=None,
                 params=None):
        self.db = db
        self.doc_ids = doc_ids
        self.filter = filter
        self.context = context
        self.params = _params(params or {})
        self.params.update({"feed": "normal",
                            "style": style,
                            "since": _seq(since),
                            "limit": _jsons(int(limit))})
        self.limit = int(limit)
        self.chunk = []
        self.finished = False
        self.closed = False
        self.last_seq = since

    def __iter__(self):
        return self

    def __next__(self):
        return self.next()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def next(self):
        if self.closed:
            raise StopIteration
        if not self.chunk:
            if self.finished:
                raise StopIteration
            self._fetch()
            if not self.chunk:
                raise StopIteration
        return self.chunk.pop()

    def close(self):
        "Release the iterator; no further changes are returned."
        self.closed = True
        self.chunk = []

    def _fetch(self):
        data = self.db._changes(dict(self.params), doc_ids=self.doc_ids,
                                filter=self.filter, context=self.context)
        results = data.get("results", [])
        self.chunk = [Change(r["id"],
                             [c["rev"] for c in r.get("changes", [])],
                             r.get("seq"),
                             bool(r.get("deleted")))
                      for r in results]
        self.chunk.reverse()
        self.last_seq = data.get("last_seq", self.last_seq)
        self.params["since"] = _seq(self.last_seq)
        if len(results) < self.limit or data.get("pending") == 0:
            self.finished = True


class _OpenRevsIterator:
    "Iterator over the leaf documents returned by an 'open_revs' request."

    def __init__(self, id, rows):
        self.id = id
        self.rows = iter(rows)

    def __iter__(self):
        return self

    def __next__(self):
        row = next(self.rows)
        if "missing" in row:
            raise NotFoundError(
                f"document '{self.id}' revision {row['missing']} missing",
                status=404)
        return row["ok"]


class KouchError(Exception):
    "Base kouchctl exception."

    exit_code = ErrUsage

    def __init__(self, message="", status=None):
        super().__init__(message)
        self.status = status


class UsageError(KouchError):
    "Invalid command line usage or option value."


class ConfigError(UsageError):
    "Invalid configuration, such as an unsupported URL scheme."


class DataError(KouchError):
    "Invalid input data, such as a malformed JSON document."

    exit_code = ErrData


class CanceledError(KouchError):
    "The operation was canceled, or its deadline passed."

    exit_code = ErrUnavailable


class TransientError(KouchError):
    "A problem that may go away if the request is retried."

    exit_code = ErrUnavailable


class NetworkError(TransientError):
    "Could not connect to, or receive a response from, the server."

    exit_code = ErrIO


class ServerError(TransientError):
    "Internal CouchDB server error."


class RequestTimeoutError(TransientError):
    "The server timed out waiting for the request."


class TooManyRequestsError(TransientError):
    "The server is rate limiting requests."


class PermanentError(KouchError):
    "The request failed, and will fail again if retried."


class BadRequestError(PermanentError):
    "Invalid request; bad name, body or headers."

    exit_code = ErrData


class ContentTypeError(PermanentError):
    "Bad 'Content-Type' value in the request."

    exit_code = ErrData


class AuthError(PermanentError):
    "Authentication is required, or the credentials are wrong."

    exit_code = ErrUnauthenticated


class AuthorizationError(PermanentError):
    "Current user not authorized to perform the operation."

    exit_code = ErrUnauthorized


class NotFoundError(PermanentError):
    "No such entity exists."

    exit_code = ErrNotFound


class ConflictError(PermanentError):
    "The operation conflicts with the current state of the entity."

    exit_code = ErrConflict


class RevisionError(ConflictError):
    "Wrong or missing '_rev' item in the document to put."


class CreationError(ConflictError):
    "Could not create the entity; it exists already."


_ERRORS = {200: None,
           201: None,
           202: None,
           304: None,
           400: BadRequestError,
           401: AuthError,
           403: AuthorizationError,
           404: NotFoundError,
           408: RequestTimeoutError,
           409: RevisionError,
           412: CreationError,
           415: ContentTypeError,
           429: TooManyRequestsError}


def _reason(response):
    "Return the error message of the response, including CouchDB's reason."
    try:
        reason = response.json().get("reason")
    except (ValueError, AttributeError):
        reason = None
    if reason:
        return f"{response.reason}: {reason}"
    return f"{response.status_code} {response.reason}"


def _jsons(data, indent=None):
    "Convert data into JSON string."
    return json.dumps(data, ensure_ascii=False, indent=indent)


def _params(params):
    "Convert keyword arguments into query parameters."
    return dict([(k, v if isinstance(v, str) else _jsons(v))
                 for k, v in params.items()])


def _seq(seq):
    "Convert a sequence token into a query parameter value."
    return seq if isinstance(seq, str) else _jsons(seq)


def _quote_id(id):
    "Quote the document identifier for use in a URL."
    for prefix in ("_design/", "_local/"):
        if id.startswith(prefix):
            return prefix + urllib.parse.quote(id[len(prefix):], safe="")
    return urllib.parse.quote(id, safe="")


def rev_generation(rev):
    "Returns the generation number of the revision identifier '<N>-<hash>'."
    generation, sep, hash = rev.partition("-")
    if not sep or not hash:
        raise ValueError(f"invalid revision identifier: {rev!r}")
    generation = int(generation)
    if generation < 1:
        raise ValueError(f"invalid revision identifier: {rev!r}")
    return generation


# Retry controller.

class ZeroBackOff:
    "Retry immediately."

    def reset(self):
        pass

    def next_delay(self):
        return 0.0


class ConstantBackOff:
    "Wait a fixed number of seconds between attempts."

    def __init__(self, delay):
        self.delay = delay

    def reset(self):
        pass

    def next_delay(self):
        return self.delay


class ExponentialBackOff:
    """Exponentially increasing delays with random jitter.

    Each delay is drawn uniformly from `interval * (1 +- randomization)`,
    after which the interval is multiplied by `multiplier`, up to
    `max_interval`.
    """

    def __init__(self, initial=0.5, multiplier=1.5, max_interval=60.0,
                 randomization=0.5, random=None):
        self.initial = initial
        self.multiplier = multiplier
        self.max_interval = max_interval
        self.randomization = randomization
        self.random = random or _new_random()
        self.reset()

    def reset(self):
        self.interval = self.initial

    def next_delay(self):
        delta = self.randomization * self.interval
        delay = self.random.uniform(self.interval - delta,
                                    self.interval + delta)
        self.interval = min(self.interval * self.multiplier,
                            self.max_interval)
        return delay


def _new_random():
    return random.Random()


class RetryPolicy:
    """The retry budget and backoff policy for `retry()`.

    - `max_attempts`: The number of retries after the first attempt.
      Zero means run once; a negative value retries forever.
    - `delay`: Seconds between attempts. `None` selects exponential
      backoff; zero retries immediately.
    - `deadline`: If greater than zero, no attempt is started later than
      this many seconds after the first one.
    - `random`: The `random.Random` instance used for jitter.
    """

    def __init__(self, max_attempts=0, delay=None, deadline=None, random=None):
        if delay is not None and delay < 0:
            raise UsageError("negative retry delay not permitted")
        if deadline is not None and deadline < 0:
            raise UsageError("negative retry timeout not permitted")
        self.max_attempts = max_attempts
        self.delay = delay
        self.deadline = deadline
        self.random = random

    def backoff(self):
        "Returns a new backoff instance according to the policy."
        if self.delay is None:
            return ExponentialBackOff(random=self.random)
        if self.delay == 0:
            return ZeroBackOff()
        return ConstantBackOff(self.delay)


def retry(func, policy=None, context=None):
    """Calls `func(context)` until it succeeds, retrying on `TransientError`
    according to the policy. Returns the value returned by `func`.

    Any other exception is raised at once. When the retry budget or the
    deadline is exhausted, the last transient error is raised. If the
    caller's `context` is canceled, `CanceledError` is raised.
    """
    if policy is None:
        policy = RetryPolicy()
    if context is None:
        context = Context()
    if not policy.deadline:
        return _retry(func, policy, context)
    child = context.with_timeout(policy.deadline)
    try:
        return _retry(func, policy, child)
    finally:
        child.release()


def _retry(func, policy, context):
    "The retry loop of `retry()`."
    backoff = policy.backoff()
    attempt = 0
    while True:
        attempt += 1
        try:
            return func(context)
        except TransientError as error:
            if policy.max_attempts >= 0 and attempt > policy.max_attempts:
                raise
            delay = backoff.next_delay()
            remaining = context.remaining()
            if remaining is not None and remaining <= delay:
                raise
            if context.canceled:
                raise CanceledError("context canceled") from error
            msg = f"Warning: transient problem: {error}."
            if delay > 0:
                msg += f" Will retry in {fmt_duration(delay)}."
            if policy.max_attempts >= 0:
                left = policy.max_attempts - attempt + 1
                msg += f" {left} {'retry' if left == 1 else 'retries'} left."
            logger.info(msg)
            if context.wait(delay):
                raise CanceledError("context canceled") from error
            if context.expired:
                raise


_DURATION_UNITS = {"ns": 1e-9,
                   "us": 1e-6,
                   "µs": 1e-6,
                   "ms": 1e-3,
                   "s": 1.0,
                   "m": 60.0,
                   "h": 3600.0}

_DURATION_RX = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value):
    """Returns the duration in seconds given by the string, or None if the
    string is empty.

    A bare number is a number of seconds. Otherwise, the string is a
    sequence of numbers with units, as in `1m30s` or `250ms`.
    Raises `UsageError` on negative or malformed values.
    """
    if value is None or value == "":
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        sign = 1.0
        rest = value
        if rest[:1] in ("-", "+"):
            sign = -1.0 if rest[0] == "-" else 1.0
            rest = rest[1:]
        if not rest:
            raise UsageError(f"invalid duration {value!r}")
        seconds = 0.0
        pos = 0
        for match in _DURATION_RX.finditer(rest):
            if match.start() != pos:
                break
            seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
            pos = match.end()
        if pos != len(rest):
            raise UsageError(f"invalid duration {value!r}")
        seconds *= sign
    if not math.isfinite(seconds):
        raise UsageError(f"invalid duration {value!r}")
    if seconds < 0:
        raise UsageError("negative timeout not permitted")
    return seconds


def fmt_duration(seconds):
    "Format the duration for display to the user."
    if seconds < 60:
        return f"{seconds:0.2f}s"
    minutes = int(seconds / 60)
    seconds -= minutes * 60
    if minutes < 60:
        return f"{minutes}m{int(seconds)}s"
    hours = minutes // 60
    minutes -= hours * 60
    if hours < 24:
        return f"{hours}h{minutes}m"
    days = hours // 24
    hours -= days * 24
    return f"{days}d{hours}h{minutes}m"


# Replication engine.

class ReplicationResult:
    """Result of a one-shot replication; contains the counters
    and the start and end times.

    - `docs_read`: Number of leaf documents read from the source.
    - `docs_written`: Number of documents written to the target.
    - `doc_write_failures`: Number of documents the target refused.
    - `missing_checked`: Number of revisions checked against the target.
    - `missing_found`: Number of revisions the target was missing.
    """

    def __init__(self):
        self.docs_read = 0
        self.docs_written = 0
        self.doc_write_failures = 0
        self.missing_checked = 0
        self.missing_found = 0
        self.start_time = None
        self.end_time = None

    def __repr__(self):
        return (f"ReplicationResult(docs_read={self.docs_read},"
                f" docs_written={self.docs_written},"
                f" doc_write_failures={self.doc_write_failures},"
                f" missing_checked={self.missing_checked},"
                f" missing_found={self.missing_found})")

    def json(self):
        "Return data in a JSON-like representation."
        result = dict()
        result["docs_read"] = self.docs_read
        result["docs_written"] = self.docs_written
        result["doc_write_failures"] = self.doc_write_failures
        result["missing_checked"] = self.missing_checked
        result["missing_found"] = self.missing_found
        result["start_time"] = _isoformat(self.start_time)
        result["end_time"] = _isoformat(self.end_time)
        return result


_REPLICATION_OPTIONS = ("copy_security", "doc_ids", "filter",
                        "source", "target", "create_target")


def replicate(target, source, options=None, context=None):
    """Replicates all revisions in the `source` database missing in the
    `target` database, in one pass. Returns a `ReplicationResult`.

    Documents are written with `new_edits=false`, so repeating the
    replication of an unchanged source writes nothing.

    `target` and `source` are `Database` instances, or `None` to take them
    from `options["target"]` and `options["source"]`, which may be URLs or
    replication document objects.

    Options:

    - `copy_security`: Copy the security object of the source to the target.
    - `doc_ids`: Replicate only the documents with these identifiers.
    - `filter`: Name of a filter function in the source database.
    - `create_target`: Create the target database if it does not exist.

    Any other option is passed on as a parameter to the changes feed.
    """
    options = dict(options or {})
    if context is None:
        context = Context()
    context.check()
    if source is None:
        source = database_from_spec(options.get("source"))
    if target is None:
        target = database_from_spec(options.get("target"))
    extra = dict([(k, v) for k, v in options.items()
                  if k not in _REPLICATION_OPTIONS])

    result = ReplicationResult()
    result.start_time = _now()
    logger.debug("Replicating %s to %s", source, target)

    if options.get("create_target"):
        _create_target(target, context)

    changes = source.iter_changes(doc_ids=options.get("doc_ids"),
                                  filter=options.get("filter"),
                                  context=context, **extra)
    with changes:
        for batch in _batches(changes):
            context.check()
            _replicate_batch(target, source, batch, result, context)

    if options.get("copy_security"):
        context.check()
        security = source.get_security(context=context)
        target.set_security(security, context=context)
        logger.debug("Copied security object to %s", target)

    result.end_time = _now()
    logger.debug("Replication done: %r", result)
    return result


def database_from_spec(spec, server=None):
    """Returns the `Database` for a replication endpoint given as a URL,
    as a database name relative to `server`, or as an object
    `{"url": ..., "auth": {"basic": {"username": ..., "password": ...}}}`.
    """
    if isinstance(spec, Database):
        return spec
    username = password = None
    if isinstance(spec, dict):
        basic = spec.get("auth", {}).get("basic", {})
        username = basic.get("username")
        password = basic.get("password")
        spec = spec.get("url")
    if not spec or not isinstance(spec, str):
        raise UsageError("replication endpoint must be a URL or an object")
    parts = urllib.parse.urlsplit(spec)
    if not parts.scheme:
        if server is None:
            raise UsageError(f"no server for database '{spec}'")
        return server.get(spec, check=False)
    path = parts.path.strip("/")
    if not path:
        raise UsageError(f"no database in URL '{_redact(spec)}'")
    username = username or _unquote(parts.username)
    password = password or _unquote(parts.password)
    netloc = parts.hostname or ""
    if parts.port:
        netloc += f":{parts.port}"
    prefix, sep, name = path.rpartition("/")
    href = urllib.parse.urlunsplit((parts.scheme, netloc, prefix, "", ""))
    server = Server(href, username=username, password=password)
    return server.get(urllib.parse.unquote(name), check=False)


def _create_target(target, context):
    "Create the target database unless it exists."
    if target.exists(context=context):
        return
    try:
        target.create(context=context)
        logger.debug("Created target database %s", target)
    except CreationError:
        pass


def _batches(changes):
    """Group the changes into batches of at most CHUNK_SIZE changes,
    or MANIFEST_MAX_BYTES of serialised manifest.
    """
    batch = []
    size = 0
    for change in changes:
        batch.append(change)
        size += len(_jsons(change.id)) + sum([len(r) + 3 for r in change.revs])
        if len(batch) >= CHUNK_SIZE or size >= MANIFEST_MAX_BYTES:
            yield batch
            batch = []
            size = 0
    if batch:
        yield batch


def _replicate_batch(target, source, batch, result, context):
    "Copy the revisions of the batch of changes missing in the target."
    manifest = dict()
    for change in batch:
        revs = manifest.setdefault(change.id, [])
        for rev in change.revs:
            if rev not in revs:
                revs.append(rev)
    result.missing_checked += sum([len(revs) for revs in manifest.values()])
    logger.debug("Checking %s documents against target", len(manifest))
    for diff in target.revs_diff(manifest, context=context):
        result.missing_found += len(diff.missing)
        docs = source.get_open_revs(diff.id, diff.missing,
                                    revs=True, attachments=True,
                                    context=context)
        for doc in docs:
            result.docs_read += 1
            try:
                _check_revisions(doc)
                target.put(doc, new_edits=False, context=context)
                result.docs_written += 1
            except PermanentError as error:
                result.doc_write_failures += 1
                logger.info("Failed to write document '%s' revision %s: %s",
                            doc.get("_id"), doc.get("_rev"), error)


def _check_revisions(doc):
    """Raise `BadRequestError` unless the revision history of the leaf
    document ends at its `_rev`, with generations counting down to 1.
    """
    rev = doc.get("_rev") or ""
    try:
        generation = rev_generation(rev)
    except ValueError as error:
        raise BadRequestError(str(error))
    revisions = doc.get("_revisions")
    if revisions is None:
        return
    ids = revisions.get("ids") or []
    if revisions.get("start") != generation or not ids or \
       len(ids) > generation or f"{generation}-{ids[0]}" != rev:
        raise BadRequestError(
            f"inconsistent revision history for revision {rev}")


def _now():
    return datetime.datetime.now(datetime.timezone.utc)


def _isoformat(value):
    if value is None:
        return None
    return value.isoformat()


def _unquote(value):
    if value is None:
        return None
    return urllib.parse.unquote(value)


def _redact(url):
    "Return the URL with any password replaced by '***'."
    parts = urllib.parse.urlsplit(url)
    if parts.password is None:
        return url
    netloc = f"{parts.username}:***@{parts.hostname}"
    if parts.port:
        netloc += f":{parts.port}"
    return urllib.parse.urlunsplit(parts._replace(netloc=netloc))


# Configuration for the command line tool.

DEFAULT_CONFIG_FILEPATH = "~/.kouchctl/config"


class Config:
    """Connection contexts for the command line tool.

    The contexts are read from a YAML file, and the DSN given on the
    command line, if any, overrides the current context.
    """

    def __init__(self):
        self.contexts = {}
        self.current_context = None

    def read(self, filepath, required=False):
        """Read the contexts from the YAML file. A missing file is an error
        only if `required` is True.
        """
        path = os.path.expanduser(filepath)
        try:
            with open(path, "r", encoding="utf-8") as infile:
                data = yaml.safe_load(infile)
        except FileNotFoundError:
            if required:
                raise ConfigError(f"config file '{filepath}' not found")
            logger.debug("No config file %s", filepath)
            return
        except (OSError, yaml.YAMLError) as error:
            raise ConfigError(f"bad config file '{filepath}': {error}")
        if data is None:
            return
        if not isinstance(data, dict) or \
           not isinstance(data.get("contexts", {}), dict):
            raise ConfigError(f"bad config file '{filepath}'")
        for name, context in data.get("contexts", {}).items():
            if not isinstance(context, dict) or "url" not in context:
                raise ConfigError(f"context '{name}' has no url")
            self.contexts[name] = context
        self.current_context = data.get("current-context")
        if self.current_context and self.current_context not in self.contexts:
            raise ConfigError(f"no such context '{self.current_context}'")
        logger.debug("Config read from file %s", filepath)

    def set_url(self, url):
        "Set the DSN given on the command line as the current context."
        parts = urllib.parse.urlsplit(url)
        if not parts.scheme or not parts.netloc:
            raise UsageError(f"invalid DSN '{_redact(url)}'")
        self.contexts["*"] = {"url": url}
        self.current_context = "*"

    def current(self):
        "Return the current context, or raise UsageError if there is none."
        if not self.current_context:
            raise UsageError("no context specified")
        return self.contexts[self.current_context]

    def client_info(self):
        """Return `(scheme, dsn, username, password)` for the server of
        the current context. The DSN contains no credentials.
        """
        context = self.current()
        parts = urllib.parse.urlsplit(context["url"])
        scheme = parts.scheme.lower()
        if scheme not in SCHEMES:
            raise UsageError(f"unsupported URL scheme: {parts.scheme}")
        netloc = parts.hostname or ""
        if parts.port:
            netloc += f":{parts.port}"
        dsn = urllib.parse.urlunsplit((scheme, netloc, "/", "", ""))
        username = _unquote(parts.username) or context.get("user")
        password = _unquote(parts.password) or context.get("password")
        return scheme, dsn, username, password

    def db(self):
        "Return the database name of the current context."
        db, doc_id = self._path()
        if not db:
            raise UsageError("no database specified")
        return db

    def doc_id(self):
        "Return the document identifier of the current context."
        db, doc_id = self._path()
        if not db or not doc_id:
            raise UsageError("no document specified")
        return doc_id

    def has_db(self):
        return bool(self._path()[0])

    def has_doc(self):
        return bool(self._path()[1])

    def _path(self):
        "Return the database name and document identifier in the URL path."
        path = urllib.parse.urlsplit(self.current()["url"]).path
        db, sep, doc_id = path.strip("/").partition("/")
        return urllib.parse.unquote(db), urllib.parse.unquote(doc_id)


# Output formatting for the command line tool.

FORMATS = ("json", "raw", "yaml", "go-template")


class Formatter:
    """Writes output data to the sink in the chosen format.

    - `json`: Indented JSON.
    - `raw`: Compact JSON; strings are written as they are.
    - `yaml`: YAML.
    - `go-template=TEMPLATE`: The template, rendered with the data as
      `data` and, if the data is an object, its items as variables.
    """

    def __init__(self, format="json", outfile=None, filepath=None, indent=2):
        name, sep, template = (format or "json").partition("=")
        if name not in FORMATS:
            raise UsageError(f"unrecognized output format: {name}")
        if name == "go-template":
            if not template:
                raise UsageError("go-template format requires a template")
            try:
                template = jinja2.Template(template, keep_trailing_newline=True)
            except jinja2.TemplateSyntaxError as error:
                raise UsageError(f"invalid template: {error}")
        elif template:
            raise UsageError(f"format {name} takes no argument")
        self.name = name
        self.template = template
        self.outfile = outfile or sys.stdout
        self.filepath = filepath
        self.indent = indent

    def output(self, data):
        "Write the data to the sink."
        if self.name == "json":
            text = _jsons(data, indent=self.indent) + "\n"
        elif self.name == "raw":
            text = data if isinstance(data, str) else _jsons(data)
        elif self.name == "yaml":
            text = yaml.safe_dump(data, default_flow_style=False,
                                  allow_unicode=True, sort_keys=False)
        else:
            variables = dict(data) if isinstance(data, dict) else {}
            variables["data"] = data
            try:
                text = self.template.render(**variables)
            except jinja2.TemplateError as error:
                raise DataError(f"template failed: {error}")
        if self.filepath:
            try:
                with open(self.filepath, "w", encoding="utf-8") as outfile:
                    outfile.write(text)
            except OSError as error:
                raise UsageError(f"cannot write output: {error}")
            logger.debug("Wrote output to file %s", self.filepath)
        else:
            self.outfile.write(text)
            self.outfile.flush()

    def ok(self):
        "Report success of an operation having no output data."
        self.output({"ok": True})


# The command line tool.

VERBS = {"get": ["doc", "db", "security", "cluster-setup"],
         "put": ["doc", "db", "security"],
         "post": ["doc", "cluster-setup", "compact", "replicate"],
         "delete": ["doc", "db"],
         "ping": []}

VERB_ALIASES = {"del": "delete"}

TARGET_ALIASES = {"document": "doc",
                  "database": "db",
                  "sec": "security",
                  "cluster": "cluster-setup",
                  "rep": "replicate"}


class _ArgumentParser(argparse.ArgumentParser):
    "Argument parser raising 'UsageError' rather than exiting."

    def error(self, message):
        raise UsageError(message)


def _add_common_arguments(p, default=None):
    """Add the options accepted both before and after the verb.
    In the verb parsers `default` is `argparse.SUPPRESS`, so as not to
    overwrite values given before the verb.
    """
    def d(value):
        return value if default is None else default
    p.add_argument("--kouchconfig", metavar="FILEPATH",
                   default=d(os.environ.get("KOUCHCONFIG",
                                            DEFAULT_CONFIG_FILEPATH)),
                   help="path to the kouchconfig file")
    p.add_argument("-d", "--debug", action="store_true", default=d(False),
                   help="enable debug output")
    p.add_argument("--retry", type=int, metavar="INT", default=d(0),
                   help="in case of transient error, retry up to this many"
                        " times; a negative value retries forever")
    p.add_argument("--retry-delay", metavar="DURATION", default=d(""),
                   help="delay between retry attempts; disables the default"
                        " exponential backoff")
    p.add_argument("--retry-timeout", metavar="DURATION", default=d(""),
                   help="when used with --retry, no more retries will be"
                        " attempted after this timeout")
    p.add_argument("--request-timeout", metavar="DURATION", default=d(""),
                   help="the time limit for each request")
    p.add_argument("--connect-timeout", metavar="DURATION", default=d(""),
                   help="limits the time spent establishing a TCP connection")
    p.add_argument("-f", "--format", metavar="FORMAT", default=d("json"),
                   help="output format: json, raw, yaml,"
                        " or go-template=TEMPLATE")
    p.add_argument("-o", "--output", metavar="FILEPATH", default=d(None),
                   help="write output to the given file")
    p.add_argument("--indent", type=int, metavar="INT", default=d(2),
                   help="indentation level for JSON output")
    p.add_argument("--data", metavar="JSON", default=d(None),
                   help="request body; literal JSON, or @FILEPATH,"
                        " or @- for standard input")
    p.add_argument("-O", "--option", dest="options", action="append",
                   metavar="KEY=VALUE", default=d([]),
                   help="option for the request; may be repeated")
    p.add_argument("--doc-id", dest="doc_ids", action="append",
                   metavar="DOCID", default=d([]),
                   help="for replicate: document to replicate;"
                        " may be repeated")


def _get_parser():
    "Get the parser for the command line tool."
    p = _ArgumentParser(prog="kouchctl",
                        usage="%(prog)s [options] VERB [TARGET] [DSN]",
                        description="kouchctl facilitates controlling"
                                    " CouchDB instances.")
    p.add_argument("-V", "--version", action="version",
                   version=f"%(prog)s {__version__}")
    _add_common_arguments(p)
    subparsers = p.add_subparsers(dest="verb", metavar="VERB")
    helps = {"get": "fetch a resource with the HTTP GET verb",
             "put": "create or update a resource with the HTTP PUT verb",
             "post": "create a resource or start an action with"
                     " the HTTP POST verb",
             "delete": "delete a resource",
             "ping": "check that the server is up"}
    for verb, targets in VERBS.items():
        aliases = [a for a, v in VERB_ALIASES.items() if v == verb]
        s = subparsers.add_parser(verb, aliases=aliases, help=helps[verb],
                                  usage=f"%(prog)s [options]"
                                        f"{' [TARGET]' if targets else ''}"
                                        f" [DSN]")
        _add_common_arguments(s, default=argparse.SUPPRESS)
        if verb == "post":
            s.add_argument("--remote", action="store_true",
                           default=argparse.SUPPRESS,
                           help="for replicate: let the server perform"
                                " the replication")
        s.add_argument("args", nargs="*", metavar="ARG",
                       help=f"target ({', '.join(targets) or 'none'})"
                            f" and DSN")
    return p


def _parse_args(argv):
    "Parse the command line, allowing options between the positionals."
    parser = _get_parser()
    pargs, extras = parser.parse_known_args(argv)
    if not pargs.verb:
        parser.error("no verb given")
    for arg in extras:
        if arg.startswith("-"):
            parser.error(f"unrecognized arguments: {arg}")
        pargs.args.append(arg)
    pargs.verb = VERB_ALIASES.get(pargs.verb, pargs.verb)
    pargs.remote = getattr(pargs, "remote", False)
    return pargs


def _option_value(value):
    "Interpret the value of a '-O' option as JSON, else as a string."
    try:
        return json.loads(value)
    except ValueError:
        return value


class _Command:
    "Execution of one invocation of the command line tool."

    def __init__(self, pargs, outfile=None):
        self.pargs = pargs
        self.target, self.dsn = self._positionals(pargs)
        self.config = Config()
        self.config.read(pargs.kouchconfig,
                         required=pargs.kouchconfig != DEFAULT_CONFIG_FILEPATH)
        dsn = self.dsn or os.environ.get("KOUCHCTL_URL")
        if dsn:
            self.config.set_url(dsn)
        self.request_timeout = parse_duration(pargs.request_timeout)
        self.connect_timeout = parse_duration(pargs.connect_timeout)
        self.policy = RetryPolicy(max_attempts=pargs.retry,
                                  delay=parse_duration(pargs.retry_delay),
                                  deadline=parse_duration(pargs.retry_timeout))
        self.options = self._options(pargs.options)
        self.fmt = Formatter(pargs.format, outfile=outfile,
                             filepath=pargs.output, indent=pargs.indent)
        self.context = Context()
        self._server = None

    def _positionals(self, pargs):
        "Return the target and the DSN given as positional arguments."
        args = list(pargs.args)
        targets = VERBS[pargs.verb]
        target = None
        if args:
            name = TARGET_ALIASES.get(args[0], args[0])
            if name in targets:
                target = name
                args.pop(0)
            elif name in TARGET_ALIASES.values() or name in sum(VERBS.values(), []):
                raise UsageError(f"cannot {pargs.verb} {name}")
        if len(args) > 1:
            raise UsageError(f"too many arguments: {' '.join(args[1:])}")
        return target, (args[0] if args else None)

    def _options(self, options):
        result = {}
        for option in options or []:
            key, sep, value = option.partition("=")
            if not sep or not key:
                raise UsageError(f"invalid option '{option}';"
                                 " expected KEY=VALUE")
            result[key] = _option_value(value)
        return result

    @property
    def server(self):
        "The connection to the server of the current context."
        if self._server is None:
            scheme, dsn, username, password = self.config.client_info()
            logger.debug("DSN: %s from %r", dsn, self.config.current_context)
            self._server = Server(dsn, username=username, password=password,
                                  request_timeout=self.request_timeout,
                                  connect_timeout=self.connect_timeout)
        return self._server

    def database(self):
        "The database of the current context, not checked for existence."
        return self.server.get(self.config.db(), check=False)

    def data(self, required=True):
        "Return the request body given by '--data', parsed as JSON."
        data = self.pargs.data
        if data is None:
            if required:
                raise UsageError("no data provided; use --data")
            return None
        try:
            if data == "@-":
                return json.load(sys.stdin)
            if data.startswith("@"):
                with open(os.path.expanduser(data[1:]), "r",
                          encoding="utf-8") as infile:
                    return json.load(infile)
            return json.loads(data)
        except OSError as error:
            raise UsageError(f"cannot read data: {error}")
        except ValueError as error:
            raise DataError(f"invalid JSON data: {error}")

    def retry(self, func):
        "Run the function under the retry controller."
        return retry(func, self.policy, self.context)

    def execute(self):
        verb = self.pargs.verb
        if verb == "ping":
            return self.ping()
        target = self.target or self._default_target(verb)
        method = getattr(self, f"{verb}_{target.replace('-', '_')}")
        return method()

    def _default_target(self, verb):
        "Infer the target from the DSN, when it is not given."
        if verb == "get":
            if self.config.has_doc():
                return "doc"
            if self.config.has_db():
                return "db"
            return "root"
        if verb == "post":
            return "doc"
        if self.config.has_doc():
            return "doc"
        return "db"

    def ping(self):
        server = self.server
        logger.debug("[ping] Will ping %s", server.href)

        def ping(ctx):
            if not server.up(context=ctx):
                raise TransientError(f"{server.href} is not ready")
        self.retry(ping)
        self.fmt.ok()

    def get_root(self):
        server = self.server
        self.fmt.output(self.retry(lambda ctx: server(context=ctx)))

    def get_doc(self):
        db = self.database()
        doc_id = self.config.doc_id()
        logger.debug("[get] Will fetch document: %s/%s", db, doc_id)

        def fetch(ctx):
            doc = db.get(doc_id, context=ctx, **self.options)
            if doc is None:
                raise NotFoundError(f"document '{doc_id}' not found",
                                    status=404)
            return doc
        self.fmt.output(self.retry(fetch))

    def get_db(self):
        db = self.database()
        logger.debug("[get] Will fetch database info: %s", db)
        self.fmt.output(self.retry(lambda ctx: db.get_info(context=ctx)))

    def get_security(self):
        db = self.database()
        logger.debug("[get] Will fetch security object: %s", db)
        self.fmt.output(self.retry(lambda ctx: db.get_security(context=ctx)))

    def get_cluster_setup(self):
        server = self.server
        ensure = self.options.get("ensure_dbs_exist")
        self.fmt.output(self.retry(lambda ctx: server.get_cluster_setup(
            ensure_dbs_exist=ensure, context=ctx)))

    def put_doc(self):
        db = self.database()
        doc_id = self.config.doc_id()
        doc = self.data()
        if not isinstance(doc, dict):
            raise DataError("document must be a JSON object")
        doc["_id"] = doc_id
        logger.debug("[put] Will put document: %s/%s", db, doc_id)
        rev = self.retry(lambda ctx: db.put(dict(doc), context=ctx,
                                            **self.options))
        self.fmt.output({"ok": True, "id": doc_id, "rev": rev})

    def put_db(self):
        db = self.database()
        logger.debug("[put] Will create database: %s", db)
        kwargs = dict([(k, self.options[k]) for k in ("n", "q", "partitioned")
                       if k in self.options])
        self.retry(lambda ctx: db.create(context=ctx, **kwargs))
        self.fmt.ok()

    def put_security(self):
        db = self.database()
        security = _security_object(self.data())
        logger.debug("[put] Will put security object: %s", db)
        self.fmt.output(self.retry(
            lambda ctx: db.set_security(security, context=ctx)))

    def post_doc(self):
        db = self.database()
        doc = self.data()
        if not isinstance(doc, dict):
            raise DataError("document must be a JSON object")
        logger.debug("[post] Will post document to: %s", db)
        self.fmt.output(self.retry(lambda ctx: db.post(doc, context=ctx,
                                                       **self.options)))

    def post_cluster_setup(self):
        server = self.server
        doc = self.data()
        logger.debug("[post] Will post cluster setup: %s", server.href)
        self.fmt.output(self.retry(
            lambda ctx: server.set_cluster_setup(doc, context=ctx)))

    def post_compact(self):
        db = self.database()
        logger.debug("[post] Will compact database: %s", db)
        self.fmt.output(self.retry(lambda ctx: db.compact(context=ctx)))

    def post_replicate(self):
        opts = dict(self.options)
        source = opts.get("source")
        target = opts.get("target")
        if not source and not target:
            raise UsageError("explicit source or target required")
        if self.pargs.doc_ids:
            opts["doc_ids"] = self.pargs.doc_ids
        for key in ("source", "target"):
            if not opts.get(key):
                opts[key] = self.config.db()
        logger.debug("[post] Will replicate %s to %s",
                     _endpoint_name(opts["source"]),
                     _endpoint_name(opts["target"]))
        if self.pargs.remote:
            self.fmt.output(self.retry(
                lambda ctx: self.server.set_replicate(opts, context=ctx)))
            return
        server = self.server if self.config.current_context else None
        source = database_from_spec(opts.pop("source"), server=server)
        target = database_from_spec(opts.pop("target"), server=server)
        result = self.retry(
            lambda ctx: replicate(target, source, opts, context=ctx))
        self.fmt.output(result.json())

    def delete_doc(self):
        db = self.database()
        doc_id = self.config.doc_id()
        logger.debug("[delete] Will delete document: %s/%s", db, doc_id)

        def delete(ctx):
            rev = self.options.get("rev")
            if rev is None:
                doc = db.get(doc_id, context=ctx)
                if doc is None:
                    raise NotFoundError(f"document '{doc_id}' not found",
                                        status=404)
                rev = doc.get("_rev")
                if not rev:
                    raise RevisionError(f"document '{doc_id}' has no revision")
            return db.delete({"_id": doc_id, "_rev": rev}, context=ctx)
        self.fmt.output(self.retry(delete))

    def delete_db(self):
        db = self.database()
        logger.debug("[delete] Will delete database: %s", db)
        self.fmt.output(self.retry(lambda ctx: db.destroy(context=ctx)))


def _security_object(data):
    "Normalise the security object to contain 'admins' and 'members'."
    if not isinstance(data, dict):
        raise DataError("security object must be a JSON object")
    result = dict(data)
    for key in ("admins", "members"):
        value = result.get(key) or {}
        if not isinstance(value, dict):
            raise DataError(f"security '{key}' must be a JSON object")
        result[key] = value
    return result


def _endpoint_name(spec):
    "Return a printable name for a replication endpoint."
    if isinstance(spec, dict):
        spec = spec.get("url", "")
    return _redact(str(spec))


def run(argv=None, stdout=None, stderr=None):
    """Execute the command line tool with the given arguments.
    Returns the exit code.
    """
    stdout = stdout or sys.stdout
    stderr = stderr or sys.stderr
    handler = logging.StreamHandler(stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    level = logger.level
    logger.setLevel(logging.INFO)
    try:
        pargs = _parse_args(sys.argv[1:] if argv is None else argv)
        if pargs.debug:
            logger.setLevel(logging.DEBUG)
            logger.debug("Debug mode enabled")
        _Command(pargs, outfile=stdout).execute()
        return 0
    except KouchError as error:
        print(f"Error: {error}", file=stderr)
        return error.exit_code
    except Exception as error:
        logger.debug("Unclassified error", exc_info=True)
        print(f"Error: {error}", file=stderr)
        return ErrUsage
    finally:
        logger.removeHandler(handler)
        logger.setLevel(level)


def main():
    "Entry point for the kouchctl command line tool."
    try:
        sys.exit(run())
    except KeyboardInterrupt:
        sys.exit("Error: interrupted")


if __name__ == "__main__":
    main()
