# This file is part of the python-keyedarchive library.
# Copyright (C) 2020 dgelessus
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Lesser General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Lesser General Public License for more details.
#
# You should have received a copy of the GNU Lesser General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.


import logging
import os
import plistlib
import typing
import xml.parsers.expat


__all__ = [
	"KEYED_ARCHIVER_NAME",
	"KEYED_ARCHIVE_VERSION",
	"NULL_PLACEHOLDER",
	"NULL_REFERENCE",
	"ROOT_KEY",
	"ArchiveError",
	"MalformedDataError",
	"UnsupportedArchiverError",
	"NoRootObjectError",
	"MalformedObjectError",
	"UnknownClassError",
	"ArchiveEnvelope",
	"iter_references",
]


logger = logging.getLogger(__name__)

# The only archiver supported.
# The non-keyed NSArchiver format (typedstream) is deprecated
# and is not handled by this library.
KEYED_ARCHIVER_NAME = "NSKeyedArchiver"
# Written into every archive by all versions of NSKeyedArchiver.
KEYED_ARCHIVE_VERSION = 100000
# Index 0 of every object table holds this string.
# A reference to index 0 stands for nil.
NULL_PLACEHOLDER = "$null"
NULL_REFERENCE = plistlib.UID(0)
# NSKeyedArchiver can store multiple named top-level objects,
# but this library only ever writes and reads this one.
ROOT_KEY = "root"

# Key under which XML plists store the number of a reference.
# plistlib only supports references natively in binary plists.
_XML_UID_KEY = "CF$UID"

# plistlib's XML parser doesn't validate element nesting or date contents,
# so corrupt XML can fail with almost any of the basic exception types.
_PARSE_ERRORS = (
	ValueError,
	OverflowError,
	IndexError,
	KeyError,
	AttributeError,
	TypeError,
	xml.parsers.expat.ExpatError,
)
_SERIALIZE_ERRORS = (TypeError, ValueError, OverflowError)


class ArchiveError(Exception):
	"""Base class for all errors reported while reading or writing a keyed archive."""


class MalformedDataError(ArchiveError):
	"""The archive data could not be parsed or serialized as a plist,
	or the parsed plist doesn't have the structure of a keyed archive.
	
	If the error was caused by :mod:`plistlib`,
	the original exception is available as ``__cause__``.
	"""


class UnsupportedArchiverError(ArchiveError):
	"""The archive was written by an archiver other than ``NSKeyedArchiver``."""
	
	archiver: str
	
	def __init__(self, archiver: str) -> None:
		super().__init__(f"Archiver {archiver!r} is not supported (expected {KEYED_ARCHIVER_NAME!r})")
		
		self.archiver = archiver


class NoRootObjectError(ArchiveError):
	"""The archive's top-level object mapping has no root object."""
	
	def __init__(self) -> None:
		super().__init__(f"Archive has no {ROOT_KEY!r} top-level object")


class MalformedObjectError(ArchiveError):
	"""The structure of the object being decoded is malformed."""
	
	def __init__(self, message: str = "Structure of the decoded object is malformed") -> None:
		super().__init__(message)


class UnknownClassError(ArchiveError):
	"""The archive contains an object whose class has not been registered."""
	
	class_name: str
	
	def __init__(self, class_name: str) -> None:
		super().__init__(f"Class {class_name!r} is unknown - was it registered with the TypeRegistry?")
		
		self.class_name = class_name


def _from_xml_references(value: typing.Any) -> typing.Any:
	"""Replace the ``{"CF$UID": n}`` dicts used by XML plists with :class:`plistlib.UID` values."""
	
	if isinstance(value, dict):
		if len(value) == 1 and _XML_UID_KEY in value:
			number = value[_XML_UID_KEY]
			if isinstance(number, int) and not isinstance(number, bool) and 0 <= number < 2**64:
				return plistlib.UID(number)
		return {key: _from_xml_references(item) for key, item in value.items()}
	elif isinstance(value, list):
		return [_from_xml_references(item) for item in value]
	else:
		return value


def _to_xml_references(value: typing.Any) -> typing.Any:
	if isinstance(value, plistlib.UID):
		return {_XML_UID_KEY: value.data}
	elif isinstance(value, dict):
		return {key: _to_xml_references(item) for key, item in value.items()}
	elif isinstance(value, list):
		return [_to_xml_references(item) for item in value]
	else:
		return value


def iter_references(value: typing.Any) -> typing.Iterable[plistlib.UID]:
	"""Yield every reference stored anywhere inside a plist value (depth first)."""
	
	if isinstance(value, plistlib.UID):
		yield value
	elif isinstance(value, dict):
		for item in value.values():
			yield from iter_references(item)
	elif isinstance(value, list):
		for item in value:
			yield from iter_references(item)


class ArchiveEnvelope(object):
	"""The top-level structure of a keyed archive.
	
	A keyed archive is a plist dictionary with exactly four keys:
	
	* ``$archiver``: the name of the archiver class that wrote the archive,
	  always ``NSKeyedArchiver`` for supported archives.
	* ``$objects``: the object table.
	  Every object, string and class description in the archive is stored exactly once in this list
	  and referred to by its index (as a :class:`plistlib.UID`).
	  Index 0 always holds the placeholder string ``$null``.
	* ``$top``: a mapping from names to references of the top-level objects.
	  Only the ``root`` entry is used.
	* ``$version``: the archive format version, always 100000.
	
	The envelope only checks this outer structure.
	The contents of the object table are checked lazily by :class:`~keyedarchive.archiving.Unarchiver`.
	"""
	
	archiver: str
	objects: typing.List[typing.Any]
	top: typing.Dict[str, plistlib.UID]
	version: int
	
	@classmethod
	def from_plist_value(cls, value: typing.Any) -> "ArchiveEnvelope":
		"""Create an envelope from an already parsed plist value.
		
		References stored in the XML form (``{"CF$UID": n}``) are converted to :class:`plistlib.UID`.
		
		:raise MalformedDataError: If the value doesn't have the structure of a keyed archive.
		"""
		
		if not isinstance(value, dict):
			raise MalformedDataError(f"Keyed archive must be a dictionary, not {type(value).__name__}")
		
		value = _from_xml_references(value)
		
		archiver = value.get("$archiver")
		if not isinstance(archiver, str):
			raise MalformedDataError(f"$archiver must be a string, not {type(archiver).__name__}")
		
		objects = value.get("$objects")
		if not isinstance(objects, list):
			raise MalformedDataError(f"$objects must be an array, not {type(objects).__name__}")
		
		top = value.get("$top")
		if not isinstance(top, dict):
			raise MalformedDataError(f"$top must be a dictionary, not {type(top).__name__}")
		for name, ref in top.items():
			if not isinstance(ref, plistlib.UID):
				raise MalformedDataError(f"$top entry {name!r} must be a reference, not {type(ref).__name__}")
		
		version = value.get("$version")
		if not isinstance(version, int) or isinstance(version, bool) or version < 0:
			raise MalformedDataError(f"$version must be a non-negative integer, not {version!r}")
		if version != KEYED_ARCHIVE_VERSION:
			logger.debug("Archive has unexpected version %d (expected %d), reading it anyway", version, KEYED_ARCHIVE_VERSION)
		
		return cls(archiver, objects, top, version)
	
	@classmethod
	def from_data(cls, data: bytes) -> "ArchiveEnvelope":
		"""Parse a keyed archive from binary or XML plist data."""
		
		try:
			value = plistlib.loads(data)
		except _PARSE_ERRORS as exc:
			raise MalformedDataError(f"Archive data is not a valid plist: {exc}") from exc
		
		return cls.from_plist_value(value)
	
	@classmethod
	def from_stream(cls, f: typing.BinaryIO) -> "ArchiveEnvelope":
		"""Parse a keyed archive from the given byte stream.
		
		The stream is read to the end and is not closed.
		"""
		
		try:
			value = plistlib.load(f)
		except _PARSE_ERRORS as exc:
			raise MalformedDataError(f"Archive data is not a valid plist: {exc}") from exc
		
		return cls.from_plist_value(value)
	
	@classmethod
	def open(cls, filename: typing.Union[str, bytes, os.PathLike]) -> "ArchiveEnvelope":
		"""Parse the keyed archive file at the given path.
		
		Errors from opening the file (:class:`OSError`) are not wrapped.
		"""
		
		with open(filename, "rb") as f:
			return cls.from_stream(f)
	
	def __init__(
		self,
		archiver: str,
		objects: typing.List[typing.Any],
		top: typing.Dict[str, plistlib.UID],
		version: int = KEYED_ARCHIVE_VERSION,
	) -> None:
		super().__init__()
		
		self.archiver = archiver
		self.objects = objects
		self.top = top
		self.version = version
	
	def __repr__(self) -> str:
		return f"{type(self).__module__}.{type(self).__qualname__}(archiver={self.archiver!r}, objects={self.objects!r}, top={self.top!r}, version={self.version!r})"
	
	def __eq__(self, other: object) -> bool:
		if not isinstance(other, ArchiveEnvelope):
			return NotImplemented
		
		return (
			self.archiver == other.archiver
			and self.objects == other.objects
			and self.top == other.top
			and self.version == other.version
		)
	
	@property
	def root(self) -> typing.Optional[plistlib.UID]:
		return self.top.get(ROOT_KEY)
	
	def to_plist_value(self) -> typing.Dict[str, typing.Any]:
		return {
			"$archiver": self.archiver,
			"$objects": self.objects,
			"$top": self.top,
			"$version": self.version,
		}
	
	def to_data(self, *, fmt: plistlib.PlistFormat = plistlib.FMT_BINARY) -> bytes:
		"""Serialize this envelope as plist data.
		
		:param fmt: :data:`plistlib.FMT_BINARY` (the default, and what NSKeyedArchiver writes)
			or :data:`plistlib.FMT_XML`.
			In XML plists, references are written as ``{"CF$UID": n}`` dictionaries.
		:raise MalformedDataError: If :mod:`plistlib` cannot serialize the object table.
		"""
		
		value: typing.Any = self.to_plist_value()
		if fmt == plistlib.FMT_XML:
			value = _to_xml_references(value)
		
		try:
			return plistlib.dumps(value, fmt=fmt, sort_keys=False)
		except _SERIALIZE_ERRORS as exc:
			raise MalformedDataError(f"Archive could not be serialized: {exc}") from exc
	
	def write(self, f: typing.BinaryIO, *, fmt: plistlib.PlistFormat = plistlib.FMT_BINARY) -> None:
		f.write(self.to_data(fmt=fmt))
