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

from . import coders
from . import envelope
from . import objects


__all__ = [
	"Archiver",
	"Unarchiver",
	"archive_to_envelope",
	"archive_to_data",
	"archive_to_stream",
	"archive_to_file",
	"unarchive_from_envelope",
	"unarchive_from_value",
	"unarchive_from_data",
	"unarchive_from_stream",
	"unarchive_from_file",
]


logger = logging.getLogger(__name__)

_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


def _is_integer(value: typing.Any) -> bool:
	# bool is a subclass of int in Python, but a separate value type in plists.
	return isinstance(value, int) and not isinstance(value, bool)


def _check_integer(value: typing.Any, key: str) -> None:
	# bool is accepted and stored as 0 or 1.
	if not isinstance(value, int):
		raise TypeError(f"Value for key {key!r} must be an integer, not {type(value).__name__}")


def _wrap_i32(value: int) -> int:
	return (value - _INT32_MIN) % 2**32 + _INT32_MIN


def _as_any_object(value: "typing.Union[objects.AnyObject, objects.Archivable]") -> objects.AnyObject:
	if isinstance(value, objects.AnyObject):
		return value
	else:
		return objects.AnyObject(value)


class Archiver(coders.Encoder):
	"""Builds the object table of a keyed archive.
	
	An :class:`Archiver` is used for a single archiving operation:
	the root object is encoded using :meth:`add_object` (or :meth:`encode_new_object`),
	which recursively encodes all nested objects,
	and the finished table is then turned into an :class:`~keyedarchive.envelope.ArchiveEnvelope` using :meth:`seal`.
	After that the archiver cannot be used anymore.
	
	Every encoded object takes up two entries in the table:
	a dictionary with the object's fields,
	and a dictionary with its class information.
	Every encoded string takes up one entry.
	Nothing is ever shared,
	not even equal strings or the class information of objects with the same class.
	
	The object graph must not contain cycles -
	archiving an object that contains itself (directly or indirectly) recurses endlessly.
	"""
	
	objects: typing.List[typing.Any]
	_active_index: typing.Optional[int]
	_sealed: bool
	
	def __init__(self) -> None:
		super().__init__()
		
		self.objects = [envelope.NULL_PLACEHOLDER]
		self._active_index = None
		self._sealed = False
	
	def __repr__(self) -> str:
		return f"<{type(self).__qualname__}: {len(self.objects)} table entries, active object {self._active_index}>"
	
	def _check_not_sealed(self) -> None:
		if self._sealed:
			raise RuntimeError("This Archiver has already been sealed and cannot be used anymore")
	
	def _active_object(self) -> typing.Dict[str, typing.Any]:
		# Everything checked here is guaranteed by the archiver itself,
		# so a failure means a bug in the archiver and not bad input.
		if self._active_index is None:
			raise AssertionError("No object is being encoded - encoding methods can only be called while an object is being encoded")
		if self._active_index >= len(self.objects):
			raise AssertionError(f"Active object index {self._active_index} is outside the object table (length {len(self.objects)})")
		
		obj = self.objects[self._active_index]
		if not isinstance(obj, dict):
			raise AssertionError(f"Active object at index {self._active_index} is not a dictionary: {obj!r}")
		return obj
	
	def _append(self, value: typing.Any) -> plistlib.UID:
		self.objects.append(value)
		return plistlib.UID(len(self.objects) - 1)
	
	def encode_new_object(self, encode: typing.Callable[[coders.Encoder], typing.Sequence[str]]) -> plistlib.UID:
		"""Add a new object to the table.
		
		The object's table entry is created before any of its fields are encoded,
		so that the object's index is fixed even though nested objects are added to the table after it.
		
		:param encode: Called with this archiver as its only argument while the new object is the active object.
			It should encode the object's fields
			and return the object's ancestor chain (see :func:`~keyedarchive.objects.ancestor_chain`).
		:return: A reference to the new object.
		"""
		
		self._check_not_sealed()
		
		ref = self._append({})
		previous_index = self._active_index
		self._active_index = ref.data
		try:
			classes = list(encode(self))
			if not classes:
				raise AssertionError("The ancestor chain of an archived object must contain at least the object's own class")
			
			class_info_ref = self._append({
				"$classes": classes,
				"$classname": classes[0],
			})
			self._active_object()["$class"] = class_info_ref
		finally:
			self._active_index = previous_index
		
		return ref
	
	def add_object(self, value: "typing.Union[objects.AnyObject, objects.Archivable]") -> plistlib.UID:
		obj = _as_any_object(value)
		
		def encode(encoder: coders.Encoder) -> typing.Sequence[str]:
			obj.encode(encoder)
			return obj.classes()
		
		return self.encode_new_object(encode)
	
	def encode_i32(self, value: int, key: str) -> None:
		_check_integer(value, key)
		if not _INT32_MIN <= value <= _INT32_MAX:
			raise OverflowError(f"Value for key {key!r} does not fit into a 32-bit integer: {value}")
		self.encode_i64(value, key)
	
	def encode_i64(self, value: int, key: str) -> None:
		_check_integer(value, key)
		if not _INT64_MIN <= value <= _INT64_MAX:
			raise OverflowError(f"Value for key {key!r} does not fit into a 64-bit integer: {value}")
		self._check_not_sealed()
		self._active_object()[key] = int(value)
	
	def encode_string(self, value: str, key: str) -> None:
		self._check_not_sealed()
		ref = self._append(value)
		self._active_object()[key] = ref
	
	def encode_object(self, value: "typing.Union[objects.AnyObject, objects.Archivable, None]", key: str) -> None:
		self._check_not_sealed()
		if value is None:
			ref = envelope.NULL_REFERENCE
		else:
			# The new object becomes the active object while it is encoded,
			# so look up the containing object again afterwards.
			ref = self.add_object(value)
		self._active_object()[key] = ref
	
	def seal(self, root: plistlib.UID) -> envelope.ArchiveEnvelope:
		"""Finish archiving and return the finished archive with the given root object.
		
		The archiver cannot be used anymore after this method has been called.
		"""
		
		self._check_not_sealed()
		if self._active_index is not None:
			raise AssertionError("Cannot seal the archive while an object is still being encoded")
		if root.data >= len(self.objects):
			raise AssertionError(f"Root object index {root.data} is outside the object table (length {len(self.objects)})")
		
		self._sealed = True
		return envelope.ArchiveEnvelope(
			archiver=envelope.KEYED_ARCHIVER_NAME,
			objects=self.objects,
			top={envelope.ROOT_KEY: root},
			version=envelope.KEYED_ARCHIVE_VERSION,
		)


class Unarchiver(coders.Decoder):
	"""Decodes the objects in a keyed archive.
	
	An :class:`Unarchiver` is used for a single unarchiving operation:
	:meth:`unarchive_root_object` decodes the archive's root object,
	which recursively decodes all nested objects.
	
	Every object is decoded by the unarchive function that the :class:`~keyedarchive.objects.TypeRegistry`
	has registered for the object's exact class name.
	"""
	
	archive: envelope.ArchiveEnvelope
	registry: objects.TypeRegistry
	_active_index: typing.Optional[int]
	
	def __init__(self, archive: envelope.ArchiveEnvelope, registry: objects.TypeRegistry) -> None:
		super().__init__()
		
		self.archive = archive
		self.registry = registry
		self._active_index = None
	
	def __repr__(self) -> str:
		return f"<{type(self).__qualname__}: {len(self.archive.objects)} table entries, active object {self._active_index}>"
	
	def _active_object(self) -> typing.Any:
		# Indices are bounds-checked before they are made active,
		# so a failure here means a bug in the unarchiver and not bad input.
		if self._active_index is None:
			raise AssertionError("No object is being decoded - decoding methods can only be called while an object is being decoded")
		if self._active_index >= len(self.archive.objects):
			raise AssertionError(f"Active object index {self._active_index} is outside the object table (length {len(self.archive.objects)})")
		
		return self.archive.objects[self._active_index]
	
	def _active_field(self, key: str) -> typing.Any:
		obj = self._active_object()
		if not isinstance(obj, dict):
			return None
		return obj.get(key)
	
	def _resolve_reference(self, value: typing.Any) -> typing.Optional[int]:
		"""Get the table index that a field value refers to.
		
		Returns ``None`` if the value is not a reference,
		is the nil reference,
		or is outside the object table.
		"""
		
		if not isinstance(value, plistlib.UID):
			return None
		index = value.data
		if index == envelope.NULL_REFERENCE.data or index >= len(self.archive.objects):
			return None
		return index
	
	def _decode_active_object(self) -> objects.AnyObject:
		obj = self._active_object()
		if not isinstance(obj, dict):
			raise envelope.MalformedObjectError(f"Object at index {self._active_index} is not a dictionary, but {type(obj).__name__}")
		
		class_ref = obj.get("$class")
		if not isinstance(class_ref, plistlib.UID):
			raise envelope.MalformedObjectError(f"Object at index {self._active_index} has no $class reference")
		if class_ref.data >= len(self.archive.objects):
			raise envelope.MalformedObjectError(f"$class reference of object at index {self._active_index} is outside the object table: {class_ref.data}")
		
		class_info = self.archive.objects[class_ref.data]
		if not isinstance(class_info, dict):
			raise envelope.MalformedObjectError(f"Class information at index {class_ref.data} is not a dictionary, but {type(class_info).__name__}")
		class_name = class_info.get("$classname")
		if not isinstance(class_name, str):
			raise envelope.MalformedObjectError(f"Class information at index {class_ref.data} has no $classname string")
		
		unarchive = self.registry.lookup(class_name)
		if unarchive is None:
			raise envelope.UnknownClassError(class_name)
		
		decoded = unarchive(self)
		if decoded is None:
			raise envelope.MalformedObjectError(f"Object of class {class_name!r} at index {self._active_index} could not be decoded")
		return decoded
	
	def unarchive_root_object(self) -> objects.AnyObject:
		"""Decode the archive's root object.
		
		:raise UnsupportedArchiverError: If the archive wasn't written by ``NSKeyedArchiver``.
		:raise NoRootObjectError: If the archive has no root object.
		:raise UnknownClassError: If the root object's class isn't registered.
		:raise MalformedObjectError: If the root object's structure is invalid
			or its unarchive function failed.
		"""
		
		if self.archive.archiver != envelope.KEYED_ARCHIVER_NAME:
			raise envelope.UnsupportedArchiverError(self.archive.archiver)
		
		root = self.archive.root
		if root is None:
			raise envelope.NoRootObjectError()
		if root.data >= len(self.archive.objects):
			raise envelope.MalformedObjectError(f"Root object index {root.data} is outside the object table (length {len(self.archive.objects)})")
		
		self._active_index = root.data
		try:
			return self._decode_active_object()
		finally:
			self._active_index = None
	
	def contains_key(self, key: str) -> bool:
		obj = self._active_object()
		return isinstance(obj, dict) and key in obj
	
	def decode_i32(self, key: str) -> int:
		return _wrap_i32(self.decode_i64(key))
	
	def decode_i64(self, key: str) -> int:
		value = self._active_field(key)
		if not _is_integer(value) or not _INT64_MIN <= value <= _INT64_MAX:
			return 0
		return value
	
	def decode_string(self, key: str) -> typing.Optional[str]:
		index = self._resolve_reference(self._active_field(key))
		if index is None:
			return None
		
		value = self.archive.objects[index]
		if not isinstance(value, str):
			return None
		return value
	
	def decode_object(self, key: str) -> typing.Optional[objects.AnyObject]:
		index = self._resolve_reference(self._active_field(key))
		if index is None:
			return None
		
		previous_index = self._active_index
		self._active_index = index
		try:
			return self._decode_active_object()
		except envelope.ArchiveError as exc:
			# Only the root object reports errors.
			# For nested objects the containing object decides whether the field is required.
			logger.debug("Treating field %r of object at index %s as missing: %s", key, previous_index, exc)
			return None
		finally:
			self._active_index = previous_index


def archive_to_envelope(value: "typing.Union[objects.AnyObject, objects.Archivable]") -> envelope.ArchiveEnvelope:
	"""Archive the given object and everything it contains into an :class:`~keyedarchive.envelope.ArchiveEnvelope`."""
	
	archiver = Archiver()
	root = archiver.add_object(value)
	return archiver.seal(root)


def archive_to_data(
	value: "typing.Union[objects.AnyObject, objects.Archivable]",
	*,
	fmt: plistlib.PlistFormat = plistlib.FMT_BINARY,
) -> bytes:
	"""Archive the given object and return the archive as plist data.
	
	:param fmt: The plist format to write, binary by default.
	:raise MalformedDataError: If the archive could not be serialized.
	"""
	
	return archive_to_envelope(value).to_data(fmt=fmt)


def archive_to_stream(
	value: "typing.Union[objects.AnyObject, objects.Archivable]",
	f: typing.BinaryIO,
	*,
	fmt: plistlib.PlistFormat = plistlib.FMT_BINARY,
) -> None:
	archive_to_envelope(value).write(f, fmt=fmt)


def archive_to_file(
	value: "typing.Union[objects.AnyObject, objects.Archivable]",
	path: typing.Union[str, bytes, os.PathLike],
	*,
	fmt: plistlib.PlistFormat = plistlib.FMT_BINARY,
) -> None:
	# Serialize first, so that a failure doesn't leave a truncated file behind.
	data = archive_to_data(value, fmt=fmt)
	with open(path, "wb") as f:
		f.write(data)


def unarchive_from_envelope(archive: envelope.ArchiveEnvelope, registry: objects.TypeRegistry) -> objects.AnyObject:
	return Unarchiver(archive, registry).unarchive_root_object()


def unarchive_from_value(value: typing.Any, registry: objects.TypeRegistry) -> objects.AnyObject:
	"""Unarchive the root object of an archive that has already been parsed into a plist value,
	for example by :func:`plistlib.loads`.
	"""
	
	return unarchive_from_envelope(envelope.ArchiveEnvelope.from_plist_value(value), registry)


def unarchive_from_data(data: bytes, registry: objects.TypeRegistry) -> objects.AnyObject:
	"""Unarchive the root object of the given binary or XML plist data."""
	
	return unarchive_from_envelope(envelope.ArchiveEnvelope.from_data(data), registry)


def unarchive_from_stream(f: typing.BinaryIO, registry: objects.TypeRegistry) -> objects.AnyObject:
	return unarchive_from_envelope(envelope.ArchiveEnvelope.from_stream(f), registry)


def unarchive_from_file(path: typing.Union[str, bytes, os.PathLike], registry: objects.TypeRegistry) -> objects.AnyObject:
	"""Unarchive the root object of the archive file at the given path."""
	
	return unarchive_from_envelope(envelope.ArchiveEnvelope.open(path), registry)
